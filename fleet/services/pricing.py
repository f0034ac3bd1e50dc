"""Static token pricing and per-task token profiles."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Optional, Tuple


@dataclass(frozen=True, slots=True)
class ModelPricing:
    """Per-model input/output pricing in USD per 1M tokens."""

    input_per_1m: float
    output_per_1m: float


@dataclass(frozen=True, slots=True)
class TokenProfile:
    input_tokens: int
    output_tokens: int


FALLBACK_PRICING = ModelPricing(input_per_1m=3.00, output_per_1m=15.00)

PRICING: Dict[str, Dict[str, ModelPricing]] = {
    "anthropic": {
        "claude-opus-4-20250514": ModelPricing(15.00, 75.00),
        "claude-sonnet-4-20250514": ModelPricing(3.00, 15.00),
        "claude-3-5-sonnet-20241022": ModelPricing(3.00, 15.00),
        "claude-3-5-haiku-20241022": ModelPricing(1.00, 5.00),
        "claude-3-opus-20240229": ModelPricing(15.00, 75.00),
    },
    "openai": {
        "gpt-4o": ModelPricing(5.00, 15.00),
        "gpt-4o-mini": ModelPricing(0.15, 0.60),
        "gpt-4-turbo": ModelPricing(10.00, 30.00),
        "gpt-3.5-turbo": ModelPricing(0.50, 1.50),
    },
    "openrouter": {
        "anthropic/claude-opus-4": ModelPricing(15.00, 75.00),
        "anthropic/claude-sonnet-4": ModelPricing(3.00, 15.00),
        "anthropic/claude-3.5-sonnet": ModelPricing(3.00, 15.00),
        "openai/gpt-4o": ModelPricing(5.00, 15.00),
        "google/gemini-pro-1.5": ModelPricing(2.50, 10.00),
        "meta-llama/llama-3.1-70b-instruct": ModelPricing(0.10, 0.10),
    },
    "groq": {
        "llama-3.3-70b-versatile": ModelPricing(0.10, 0.10),
        "llama-3.1-70b-versatile": ModelPricing(0.10, 0.10),
        "mixtral-8x7b-32768": ModelPricing(0.10, 0.10),
    },
    "local": {
        "echo-1": ModelPricing(0.0, 0.0),
    },
}

DEFAULT_PROFILE = TokenProfile(2_000, 1_000)

# Keyed by task type first, then by agent type.
TOKEN_PROFILES: Dict[str, TokenProfile] = {
    "code_review": TokenProfile(5_000, 2_000),
    "review_pr": TokenProfile(5_000, 2_000),
    "analyze_diff": TokenProfile(3_000, 1_500),
    "doc_gen": TokenProfile(3_000, 3_000),
    "documentation": TokenProfile(3_000, 3_000),
    "debugger": TokenProfile(4_000, 1_500),
    "dependency_check": TokenProfile(2_000, 1_000),
    "tooling_suggest": TokenProfile(2_000, 1_000),
    "visualization": TokenProfile(3_000, 2_000),
    "cost_monitor": TokenProfile(1_000, 500),
}

# model -> (cheaper model, minimum request count before suggesting, reason)
MODEL_DOWNGRADES: Dict[str, Tuple[str, int, str]] = {
    "claude-opus-4-20250514": (
        "claude-3-5-sonnet-20241022",
        0,
        "Consider using Sonnet instead of Opus for non-critical tasks",
    ),
    "claude-3-opus-20240229": (
        "claude-3-5-sonnet-20241022",
        0,
        "Consider using Sonnet instead of Opus for non-critical tasks",
    ),
    "claude-sonnet-4-20250514": (
        "claude-3-5-haiku-20241022",
        100,
        "High-usage agent could use Haiku for routine tasks",
    ),
    "claude-3-5-sonnet-20241022": (
        "claude-3-5-haiku-20241022",
        100,
        "High-usage agent could use Haiku for routine tasks",
    ),
    "gpt-4-turbo": ("gpt-4o", 0, "GPT-4o matches GPT-4 Turbo at a lower rate"),
    "gpt-4o": ("gpt-4o-mini", 100, "High-usage agent could use GPT-4o Mini for routine tasks"),
}


def lookup_pricing(provider: str, model: str) -> Optional[ModelPricing]:
    return PRICING.get(provider, {}).get(model)


def calculate_cost(provider: str, model: str, input_tokens: int, output_tokens: int) -> float:
    """Cost in USD; unknown provider/model pairs use the conservative fallback rate."""
    pricing = lookup_pricing(provider, model) or FALLBACK_PRICING
    return (input_tokens / 1_000_000) * pricing.input_per_1m + (
        output_tokens / 1_000_000
    ) * pricing.output_per_1m


def token_profile(task_type: Optional[str], agent_type: Optional[str] = None) -> TokenProfile:
    for key in (task_type, agent_type):
        if key and key in TOKEN_PROFILES:
            return TOKEN_PROFILES[key]
    return DEFAULT_PROFILE
