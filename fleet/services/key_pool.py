"""Credential pools with round-robin rotation, quarantine and cost accounting."""
from __future__ import annotations

import os
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, List, Mapping, Optional, Set, Tuple

import structlog

from fleet.core.errors import ConfigurationError
from fleet.core.models import AgentConfig, BudgetPeriod, utc_now
from fleet.services import pricing

logger = structlog.get_logger(__name__)

DEFAULT_POOL = "default"
CRITICAL_POOL = "critical"
DEFAULT_PROVIDER = "anthropic"
DEFAULT_MODEL = "claude-3-5-sonnet-20241022"

PROVIDER_ENV_VARS: Dict[str, Tuple[str, str]] = {
    "anthropic": ("ANTHROPIC_API_KEYS", "ANTHROPIC_API_KEY"),
    "openai": ("OPENAI_API_KEYS", "OPENAI_API_KEY"),
    "openrouter": ("OPENROUTER_API_KEYS", "OPENROUTER_API_KEY"),
    "groq": ("GROQ_API_KEYS", "GROQ_API_KEY"),
}


@dataclass(slots=True)
class Credential:
    key: str
    provider: str
    failures: int = 0
    request_count: int = 0
    last_used: Optional[datetime] = None


@dataclass(slots=True)
class UsageStats:
    requests: int = 0
    input_tokens: int = 0
    output_tokens: int = 0
    cost: float = 0.0


class KeyPool:
    """Ordered set of upstream credentials rotated round-robin.

    A credential rejected by its provider is quarantined and skipped. When
    every candidate credential is quarantined the quarantine is lifted for
    those credentials so the pool heals instead of locking out permanently.
    """

    def __init__(
        self,
        name: str,
        credentials: Iterable[Tuple[str, str]] = (),
        *,
        budget_limit: Optional[float] = None,
        budget_period: Optional[BudgetPeriod] = None,
        priority: int = 0,
    ) -> None:
        self.name = name
        self.budget_limit = budget_limit
        self.budget_period = budget_period
        self.priority = priority
        self.spent = 0.0
        self.usage: Dict[Tuple[str, str], UsageStats] = {}
        self._credentials: List[Credential] = []
        self._index: Dict[str, Credential] = {}
        self._quarantined: Set[str] = set()
        self._cursor = -1
        for provider, key in credentials:
            self.add(key, provider)

    def add(self, key: str, provider: str = DEFAULT_PROVIDER) -> None:
        if key in self._index:
            return
        credential = Credential(key=key, provider=provider)
        self._credentials.append(credential)
        self._index[key] = credential

    def __len__(self) -> int:
        return len(self._credentials)

    def __contains__(self, key: object) -> bool:
        return key in self._index

    @property
    def providers(self) -> Set[str]:
        return {credential.provider for credential in self._credentials}

    def is_quarantined(self, key: str) -> bool:
        return key in self._quarantined

    def get_next_key(self, provider: Optional[str] = None) -> Optional[str]:
        """Return the next usable credential, or ``None`` if the pool has none."""
        candidates = [
            position
            for position, credential in enumerate(self._credentials)
            if provider is None or credential.provider == provider
        ]
        if not candidates:
            return None

        usable = [p for p in candidates if self._credentials[p].key not in self._quarantined]
        if not usable:
            for position in candidates:
                self._quarantined.discard(self._credentials[position].key)
            logger.warning("key_pool.quarantine_reset", pool=self.name, provider=provider)
            usable = candidates

        # First usable position strictly after the cursor, wrapping around.
        position = next((p for p in usable if p > self._cursor), usable[0])
        self._cursor = position
        credential = self._credentials[position]
        credential.request_count += 1
        credential.last_used = utc_now()
        return credential.key

    def mark_failed(self, key: str) -> bool:
        credential = self._index.get(key)
        if credential is None:
            return False
        credential.failures += 1
        self._quarantined.add(key)
        logger.warning(
            "key_pool.credential_quarantined",
            pool=self.name,
            provider=credential.provider,
            failures=credential.failures,
        )
        return True

    def has_keys(self, provider: Optional[str] = None) -> bool:
        """True if a non-quarantined credential exists (for the provider)."""
        return any(
            credential.key not in self._quarantined
            for credential in self._credentials
            if provider is None or credential.provider == provider
        )

    def record_usage(
        self,
        provider: str,
        model: str,
        input_tokens: int,
        output_tokens: int,
        cost: Optional[float] = None,
    ) -> float:
        if cost is None:
            cost = pricing.calculate_cost(provider, model, input_tokens, output_tokens)
        stats = self.usage.setdefault((provider, model), UsageStats())
        stats.requests += 1
        stats.input_tokens += input_tokens
        stats.output_tokens += output_tokens
        stats.cost += cost
        self.spent += cost
        return cost

    def stats(self) -> Dict[str, Any]:
        return {
            "pool": self.name,
            "total_keys": len(self._credentials),
            "active_keys": len(self._credentials) - len(self._quarantined),
            "quarantined_keys": len(self._quarantined),
            "providers": sorted(self.providers),
            "spent": self.spent,
            "budget_limit": self.budget_limit,
            "budget_remaining": (
                self.budget_limit - self.spent if self.budget_limit is not None else None
            ),
            "usage": {
                f"{provider}:{model}": {
                    "requests": stats.requests,
                    "input_tokens": stats.input_tokens,
                    "output_tokens": stats.output_tokens,
                    "cost": stats.cost,
                }
                for (provider, model), stats in self.usage.items()
            },
        }


class CredentialRouter:
    """Routes agent types to credential pools, models and providers."""

    def __init__(self, agent_types: Optional[Mapping[str, AgentConfig]] = None) -> None:
        self._pools: Dict[str, KeyPool] = {}
        self._agent_types: Dict[str, AgentConfig] = dict(agent_types or {})

    @classmethod
    def from_env(
        cls,
        agent_types: Optional[Mapping[str, AgentConfig]] = None,
        env: Optional[Mapping[str, str]] = None,
    ) -> CredentialRouter:
        """Build the ``default`` and ``critical`` pools from environment variables.

        ``CRITICAL_API_KEYS`` entries may be written as ``provider:key``; bare
        keys are assumed to belong to Anthropic.
        """
        env = os.environ if env is None else env
        router = cls(agent_types)

        default_keys: List[Tuple[str, str]] = []
        for provider, (plural, singular) in PROVIDER_ENV_VARS.items():
            for key in _split_keys(env.get(plural) or env.get(singular)):
                default_keys.append((provider, key))
        if default_keys:
            router.create_pool(DEFAULT_POOL, default_keys)

        critical_keys: List[Tuple[str, str]] = []
        for entry in _split_keys(env.get("CRITICAL_API_KEYS")):
            provider, sep, key = entry.partition(":")
            if sep and provider in PROVIDER_ENV_VARS:
                critical_keys.append((provider, key))
            else:
                critical_keys.append((DEFAULT_PROVIDER, entry))
        if critical_keys:
            router.create_pool(CRITICAL_POOL, critical_keys, priority=10)

        logger.info(
            "credentials.loaded",
            pools={name: len(pool) for name, pool in router._pools.items()},
        )
        return router

    def create_pool(
        self,
        name: str,
        credentials: Iterable[Tuple[str, str]],
        *,
        budget_limit: Optional[float] = None,
        budget_period: Optional[BudgetPeriod] = None,
        priority: int = 0,
    ) -> KeyPool:
        """Create or replace a named pool from ``(provider, key)`` pairs."""
        pool = KeyPool(
            name,
            credentials,
            budget_limit=budget_limit,
            budget_period=budget_period,
            priority=priority,
        )
        self._pools[name] = pool
        return pool

    def get_pool(self, name: str) -> Optional[KeyPool]:
        return self._pools.get(name)

    @property
    def pools(self) -> Dict[str, KeyPool]:
        return dict(self._pools)

    def agent_config(self, agent_type: str) -> Optional[AgentConfig]:
        return self._agent_types.get(agent_type)

    def pool_for_agent(self, agent_type: str) -> str:
        """Configured pool for the agent type, or ``default`` when that pool does not exist."""
        agent_config = self._agent_types.get(agent_type)
        name = agent_config.pool if agent_config else DEFAULT_POOL
        if name not in self._pools:
            return DEFAULT_POOL
        return name

    def model_for_agent(self, agent_type: str) -> str:
        agent_config = self._agent_types.get(agent_type)
        return agent_config.model if agent_config else DEFAULT_MODEL

    def provider_for_agent(self, agent_type: str) -> str:
        agent_config = self._agent_types.get(agent_type)
        return agent_config.provider if agent_config else DEFAULT_PROVIDER

    def get_key_for_agent(self, agent_type: str, provider: Optional[str] = None) -> Optional[str]:
        pool = self._pools.get(self.pool_for_agent(agent_type))
        if pool is None:
            return None
        return pool.get_next_key(provider or self.provider_for_agent(agent_type))

    def require_key(self, agent_type: str, provider: Optional[str] = None) -> str:
        provider = provider or self.provider_for_agent(agent_type)
        key = self.get_key_for_agent(agent_type, provider)
        if key is None:
            raise ConfigurationError(f"No API key available for provider: {provider}")
        return key

    def mark_key_failed(self, key: str) -> bool:
        marked = False
        for pool in self._pools.values():
            if key in pool:
                marked = pool.mark_failed(key) or marked
        return marked

    def record_usage(
        self,
        pool_name: str,
        provider: str,
        model: str,
        input_tokens: int,
        output_tokens: int,
        cost: Optional[float] = None,
    ) -> float:
        pool = self._pools.get(pool_name) or self._pools.get(DEFAULT_POOL)
        if pool is None:
            if cost is not None:
                return cost
            return self.calculate_cost(provider, model, input_tokens, output_tokens)
        return pool.record_usage(provider, model, input_tokens, output_tokens, cost)

    @staticmethod
    def calculate_cost(provider: str, model: str, input_tokens: int, output_tokens: int) -> float:
        return pricing.calculate_cost(provider, model, input_tokens, output_tokens)

    def predict_cost(self, agent_type: str, task_type: Optional[str] = None) -> float:
        """Heuristic pre-admission estimate from static token profiles."""
        profile = pricing.token_profile(task_type, agent_type)
        return self.calculate_cost(
            self.provider_for_agent(agent_type),
            self.model_for_agent(agent_type),
            profile.input_tokens,
            profile.output_tokens,
        )

    def has_keys(self, provider: str) -> bool:
        return any(pool.has_keys(provider) for pool in self._pools.values())

    def available_providers(self) -> List[str]:
        providers: Set[str] = set()
        for pool in self._pools.values():
            providers |= pool.providers
        return sorted(providers)

    def stats(self) -> Dict[str, Any]:
        pools = {name: pool.stats() for name, pool in self._pools.items()}
        return {
            "pools": pools,
            "total_spent": sum(pool.spent for pool in self._pools.values()),
            "total_budget_limit": sum(pool.budget_limit or 0.0 for pool in self._pools.values()),
        }


def _split_keys(raw: Optional[str]) -> List[str]:
    if not raw:
        return []
    return [item.strip() for item in raw.split(",") if item.strip()]
