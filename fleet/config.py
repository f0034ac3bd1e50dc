"""Configuration management for the agent fleet."""
from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Dict, Mapping, Optional

from fleet.core.models import AgentConfig

DEFAULT_AGENT_TYPES: Dict[str, AgentConfig] = {
    "code_review": AgentConfig("code_review", "claude-sonnet-4-20250514"),
    "documentation": AgentConfig("documentation", "claude-3-5-sonnet-20241022"),
    "repo_manager": AgentConfig("repo_manager", "claude-3-5-sonnet-20241022"),
    "tooling": AgentConfig("tooling", "claude-3-5-haiku-20241022"),
    "cost_observability": AgentConfig("cost_observability", "claude-3-5-haiku-20241022"),
    "debugger": AgentConfig(
        "debugger", "claude-sonnet-4-20250514", pool="critical", auto_start=False
    ),
    # Registered in the table but no implementation ships; spawning is skipped.
    "governance": AgentConfig(
        "governance", "claude-opus-4-20250514", pool="critical", auto_start=False
    ),
    "visualization": AgentConfig("visualization", "claude-3-5-sonnet-20241022"),
    "echo": AgentConfig("echo", "echo-1", provider="local", auto_start=False),
}


@dataclass(frozen=True)
class SchedulerSettings:
    """Task queue polling and retry configuration."""

    poll_interval: float = 5.0
    concurrency: int = 3
    max_retries: int = 3
    monitor_interval: float = 30.0
    stale_threshold: float = 30 * 60.0
    stop_timeout: float = 30.0


@dataclass(frozen=True)
class SupervisorSettings:
    """Worker liveness configuration."""

    heartbeat_interval: float = 30.0
    heartbeat_timeout: float = 60.0
    health_interval: float = 30.0
    terminate_timeout: float = 10.0


@dataclass(frozen=True)
class BudgetSettings:
    check_interval: float = 60.0
    anomaly_threshold: float = 2.0
    default_alert_threshold: float = 0.8


@dataclass(frozen=True)
class Config:
    """Application configuration loaded from environment variables."""

    scheduler: SchedulerSettings = field(default_factory=SchedulerSettings)
    supervisor: SupervisorSettings = field(default_factory=SupervisorSettings)
    budget: BudgetSettings = field(default_factory=BudgetSettings)
    agent_types: Mapping[str, AgentConfig] = field(
        default_factory=lambda: dict(DEFAULT_AGENT_TYPES)
    )
    database_url: Optional[str] = None
    log_level: str = "INFO"
    log_json: bool = False
    environment: str = "development"

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> Config:
        """Load configuration from environment variables."""
        env = os.environ if env is None else env

        def number(name: str, default: float) -> float:
            return float(env.get(name, default))

        return cls(
            scheduler=SchedulerSettings(
                poll_interval=number("FLEET_POLL_INTERVAL", 5.0),
                concurrency=int(env.get("FLEET_CONCURRENCY", "3")),
                max_retries=int(env.get("FLEET_MAX_RETRIES", "3")),
                monitor_interval=number("FLEET_MONITOR_INTERVAL", 30.0),
                stale_threshold=number("FLEET_STALE_THRESHOLD", 1800.0),
                stop_timeout=number("FLEET_STOP_TIMEOUT", 30.0),
            ),
            supervisor=SupervisorSettings(
                heartbeat_interval=number("FLEET_HEARTBEAT_INTERVAL", 30.0),
                heartbeat_timeout=number("FLEET_HEARTBEAT_TIMEOUT", 60.0),
                health_interval=number("FLEET_HEALTH_INTERVAL", 30.0),
                terminate_timeout=number("FLEET_TERMINATE_TIMEOUT", 10.0),
            ),
            budget=BudgetSettings(
                check_interval=number("FLEET_BUDGET_CHECK_INTERVAL", 60.0),
                anomaly_threshold=number("FLEET_ANOMALY_THRESHOLD", 2.0),
                default_alert_threshold=number("FLEET_ALERT_THRESHOLD", 0.8),
            ),
            database_url=env.get("FLEET_DATABASE_URL") or None,
            log_level=env.get("FLEET_LOG_LEVEL", "INFO"),
            log_json=env.get("FLEET_LOG_JSON", "").lower() in {"1", "true", "yes"},
            environment=env.get("ENVIRONMENT", "development"),
        )


# Global config instance
config = Config.from_env()
