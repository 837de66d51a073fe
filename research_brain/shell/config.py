"""Configuration loading — merges settings.toml and .env."""

from __future__ import annotations

import dataclasses
import os
import tomllib
from dataclasses import dataclass, field
from pathlib import Path

from dotenv import load_dotenv

from research_brain.shell.contract import (
    DEFAULT_POLICIES,
    CostClass,
    ModePolicy,
    ResearchMode,
)


PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent
CONFIG_DIR = PROJECT_ROOT / "config"

# Policy fields that may be overridden per mode from [orchestrator.modes.<MODE>]
_POLICY_KEYS = (
    "priority", "cooldown_minutes", "slot_minutes", "slot_window_minutes",
    "backpressure_ceiling", "backpressure_penalty_minutes", "provider",
    "estimated_cost_usd", "timeout_seconds", "cost_class",
)


@dataclass
class AIConfig:
    provider: str = "anthropic"
    anthropic_api_key: str = ""
    sonnet_model: str = "claude-sonnet-4-5-20250929"
    opus_model: str = "claude-opus-4-6"
    haiku_model: str = "claude-haiku-4-5-20251001"
    max_tokens: int = 4096
    vertex_project_id: str = ""
    vertex_region: str = "us-east5"

    def model_for(self, cost_class: CostClass) -> str:
        if cost_class == CostClass.LOW:
            return self.haiku_model
        if cost_class == CostClass.HIGH:
            return self.opus_model
        return self.sonnet_model


@dataclass
class BudgetConfig:
    daily_budget_usd: float = 50.0
    period_budget_usd: float = 1000.0


@dataclass
class OrchestratorConfig:
    enabled: bool = True
    tick_interval_seconds: int = 60
    max_concurrent_jobs: int = 3
    max_daily_cost_usd: float = 50.0
    dedup_ttl_hours: float = 24
    default_max_retries: int = 2
    retry_backoff_seconds: int = 60      # doubled on each further retry
    lock_lease_seconds: int = 15
    lock_wait_seconds: float = 10.0
    stale_job_grace_seconds: int = 120
    history_limit: int = 20              # prior candidates passed to the executor
    modes: dict[str, dict] = field(default_factory=dict)

    def policies(self) -> dict[ResearchMode, ModePolicy]:
        """Default mode policies with settings.toml overrides applied."""
        result = {}
        for mode, policy in DEFAULT_POLICIES.items():
            overrides = dict(self.modes.get(mode.value, {}))
            if "slot_minutes" in overrides:
                overrides["slot_minutes"] = tuple(overrides["slot_minutes"])
            if "cost_class" in overrides:
                overrides["cost_class"] = CostClass(overrides["cost_class"])
            overrides = {k: v for k, v in overrides.items() if k in _POLICY_KEYS}
            result[mode] = dataclasses.replace(policy, **overrides)
        return result


@dataclass
class ObservabilityConfig:
    health_check_minutes: int = 5
    budget_warning_pct: float = 0.80
    budget_critical_pct: float = 0.95
    failure_rate_threshold: float = 0.30
    backpressure_deferred_threshold: int = 10
    scheduling_drift_minutes: int = 10
    stall_after_ticks: int = 5


@dataclass
class ApiConfig:
    enabled: bool = False
    host: str = "127.0.0.1"
    port: int = 8080


@dataclass
class Config:
    timezone: str = "UTC"
    log_level: str = "INFO"
    instance_name: str = "research-brain"
    db_path: str = ""
    ai: AIConfig = field(default_factory=AIConfig)
    orchestrator: OrchestratorConfig = field(default_factory=OrchestratorConfig)
    budgets: dict[str, BudgetConfig] = field(
        default_factory=lambda: {"anthropic": BudgetConfig()}
    )
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)
    api: ApiConfig = field(default_factory=ApiConfig)


def load_config(settings_path: Path | None = None) -> Config:
    """Load configuration from settings.toml and environment variables."""
    load_dotenv(PROJECT_ROOT / ".env")

    config = Config()
    config.db_path = str(PROJECT_ROOT / "data" / "research.db")

    settings_path = settings_path or CONFIG_DIR / "settings.toml"
    if settings_path.exists():
        with open(settings_path, "rb") as f:
            settings = tomllib.load(f)

        general = settings.get("general", {})
        config.timezone = general.get("timezone", config.timezone)
        config.log_level = general.get("log_level", config.log_level)
        config.instance_name = general.get("instance_name", config.instance_name)
        if general.get("db_path"):
            db_path = Path(general["db_path"])
            config.db_path = str(db_path if db_path.is_absolute() else PROJECT_ROOT / db_path)

        orch = settings.get("orchestrator", {})
        for key in vars(config.orchestrator):
            if key != "modes" and key in orch:
                setattr(config.orchestrator, key, orch[key])
        config.orchestrator.modes = orch.get("modes", config.orchestrator.modes)

        budgets = settings.get("budgets")
        if budgets is not None:
            config.budgets = {
                provider: BudgetConfig(
                    daily_budget_usd=b.get("daily_budget_usd", BudgetConfig.daily_budget_usd),
                    period_budget_usd=b.get("period_budget_usd", BudgetConfig.period_budget_usd),
                )
                for provider, b in budgets.items()
            }

        ai = settings.get("ai", {})
        config.ai.provider = ai.get("provider", config.ai.provider)
        config.ai.sonnet_model = ai.get("sonnet_model", config.ai.sonnet_model)
        config.ai.opus_model = ai.get("opus_model", config.ai.opus_model)
        config.ai.haiku_model = ai.get("haiku_model", config.ai.haiku_model)
        config.ai.max_tokens = ai.get("max_tokens", config.ai.max_tokens)

        vertex = ai.get("vertex", {})
        config.ai.vertex_project_id = vertex.get("project_id", config.ai.vertex_project_id)
        config.ai.vertex_region = vertex.get("region", config.ai.vertex_region)

        obs = settings.get("observability", {})
        for key in vars(config.observability):
            if key in obs:
                setattr(config.observability, key, obs[key])

        api = settings.get("api", {})
        config.api.enabled = api.get("enabled", config.api.enabled)
        config.api.host = api.get("host", config.api.host)
        config.api.port = api.get("port", config.api.port)

    # Environment variables (secrets + deployment overrides)
    config.ai.anthropic_api_key = os.getenv("ANTHROPIC_API_KEY", "")
    if os.getenv("RESEARCH_DB_PATH"):
        config.db_path = os.environ["RESEARCH_DB_PATH"]

    _validate_config(config)

    return config


def _validate_config(config: Config) -> None:
    """Validate config values are within sane ranges."""
    from zoneinfo import ZoneInfo

    errors = []
    orch = config.orchestrator

    if orch.tick_interval_seconds < 1:
        errors.append(f"tick_interval_seconds must be >= 1, got {orch.tick_interval_seconds}")
    if orch.max_concurrent_jobs < 1:
        errors.append(f"max_concurrent_jobs must be >= 1, got {orch.max_concurrent_jobs}")
    if orch.max_daily_cost_usd <= 0:
        errors.append(f"max_daily_cost_usd must be > 0, got {orch.max_daily_cost_usd}")
    if orch.dedup_ttl_hours <= 0:
        errors.append(f"dedup_ttl_hours must be > 0, got {orch.dedup_ttl_hours}")
    if orch.default_max_retries < 0:
        errors.append(f"default_max_retries must be >= 0, got {orch.default_max_retries}")
    if orch.retry_backoff_seconds < 0:
        errors.append(f"retry_backoff_seconds must be >= 0, got {orch.retry_backoff_seconds}")
    if orch.lock_lease_seconds < 1:
        errors.append(f"lock_lease_seconds must be >= 1, got {orch.lock_lease_seconds}")
    if orch.lock_wait_seconds < 0:
        errors.append(f"lock_wait_seconds must be >= 0, got {orch.lock_wait_seconds}")

    known_modes = {m.value for m in ResearchMode}
    for name in orch.modes:
        if name not in known_modes:
            errors.append(f"Unknown research mode in [orchestrator.modes]: '{name}'")
    if not errors:
        try:
            policies = orch.policies()
        except (ValueError, TypeError) as e:
            errors.append(f"Invalid mode policy override: {e}")
            policies = {}
        for mode, policy in policies.items():
            if policy.cooldown_minutes < 0:
                errors.append(f"{mode.value}.cooldown_minutes must be >= 0, got {policy.cooldown_minutes}")
            if any(not (0 <= m <= 59) for m in policy.slot_minutes):
                errors.append(f"{mode.value}.slot_minutes must be 0-59, got {list(policy.slot_minutes)}")
            if not (1 <= policy.slot_window_minutes <= 60):
                errors.append(f"{mode.value}.slot_window_minutes must be 1-60, got {policy.slot_window_minutes}")
            if policy.backpressure_ceiling < 0:
                errors.append(f"{mode.value}.backpressure_ceiling must be >= 0, got {policy.backpressure_ceiling}")
            if policy.timeout_seconds < 1:
                errors.append(f"{mode.value}.timeout_seconds must be >= 1, got {policy.timeout_seconds}")
            if policy.estimated_cost_usd < 0:
                errors.append(f"{mode.value}.estimated_cost_usd must be >= 0, got {policy.estimated_cost_usd}")

    for provider, budget in config.budgets.items():
        if budget.daily_budget_usd < 0:
            errors.append(f"budgets.{provider}.daily_budget_usd must be >= 0, got {budget.daily_budget_usd}")
        if budget.period_budget_usd < budget.daily_budget_usd:
            errors.append(
                f"budgets.{provider}.period_budget_usd ({budget.period_budget_usd}) "
                f"< daily_budget_usd ({budget.daily_budget_usd})"
            )

    obs = config.observability
    if not (0 < obs.budget_warning_pct <= obs.budget_critical_pct <= 1):
        errors.append(
            f"budget thresholds must satisfy 0 < warning <= critical <= 1, "
            f"got {obs.budget_warning_pct}/{obs.budget_critical_pct}"
        )
    if not (0 < obs.failure_rate_threshold <= 1):
        errors.append(f"failure_rate_threshold must be 0-1, got {obs.failure_rate_threshold}")
    if obs.health_check_minutes < 1:
        errors.append(f"health_check_minutes must be >= 1, got {obs.health_check_minutes}")

    if config.ai.provider not in ("anthropic", "vertex"):
        errors.append(f"ai.provider must be 'anthropic' or 'vertex', got '{config.ai.provider}'")
    if config.api.enabled and not (1 <= config.api.port <= 65535):
        errors.append(f"api.port must be 1-65535, got {config.api.port}")

    try:
        ZoneInfo(config.timezone)
    except Exception:
        errors.append(f"Invalid timezone: '{config.timezone}'")

    if errors:
        raise ValueError("Config validation failed:\n  " + "\n  ".join(errors))
