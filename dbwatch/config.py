"""Daemon configuration.

Settings are loaded once in the entry point and passed explicitly to every
component.  Sources, highest priority first: constructor kwargs, environment
variables (``DBWATCH_`` prefix, ``__`` for nesting, e.g.
``DBWATCH_AI__ENABLED=true``), ``.env``, then a YAML file
(``dbwatch.yaml`` or the path in ``DBWATCH_CONFIG_FILE``).
"""

import os
from functools import lru_cache
from typing import ClassVar, Literal

from pydantic import BaseModel, Field, SecretStr, model_validator
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
    YamlConfigSettingsSource,
)

Level = Literal["info", "warning", "critical"]

CHECK_NAMES = ("slow_operations", "blocking", "high_cpu", "watch_queries", "unused_indexes", "cache_hit")


class DataSourceSettings(BaseModel):
    dsn: str = ""
    database: str = ""
    server_name: str = ""
    connect_timeout_seconds: float = 10.0


class ThresholdTier(BaseModel):
    """Floors for one severity tier.  ``None`` means the tier is unused for that metric."""

    execution_time_ms: float | None = None
    cpu_time_ms: float | None = None
    blocking_time_ms: float | None = None


class ThresholdSet(BaseModel):
    """Ordered floors for a single metric."""

    info: float | None = None
    warning: float | None = None
    critical: float | None = None


class Thresholds(BaseModel):
    info: ThresholdTier = ThresholdTier(execution_time_ms=1000, cpu_time_ms=1000, blocking_time_ms=1000)
    warning: ThresholdTier = ThresholdTier(execution_time_ms=5000, cpu_time_ms=3000, blocking_time_ms=5000)
    critical: ThresholdTier = ThresholdTier(execution_time_ms=10000, cpu_time_ms=5000, blocking_time_ms=10000)

    def for_metric(self, metric: str) -> ThresholdSet:
        return ThresholdSet(
            info=getattr(self.info, metric),
            warning=getattr(self.warning, metric),
            critical=getattr(self.critical, metric),
        )

    @model_validator(mode="after")
    def _check_ordering(self) -> "Thresholds":
        for metric in ThresholdTier.model_fields:
            floors = [f for f in (getattr(t, metric) for t in (self.info, self.warning, self.critical)) if f is not None]
            if floors != sorted(floors):
                msg = f"thresholds for {metric} must satisfy info <= warning <= critical"
                raise ValueError(msg)
        return self


class MonitoringSettings(BaseModel):
    interval_seconds: float = 10.0
    enabled_checks: list[str] = Field(default_factory=lambda: ["slow_operations", "blocking", "high_cpu"])
    check_timeout_seconds: float = 15.0
    tick_timeout_seconds: float = 60.0
    top_n: int = 5
    cache_hit_floor_percent: float = 90.0

    @model_validator(mode="after")
    def _check_names(self) -> "MonitoringSettings":
        unknown = set(self.enabled_checks) - set(CHECK_NAMES)
        if unknown:
            msg = f"Unknown checks in enabled_checks: {', '.join(sorted(unknown))}"
            raise ValueError(msg)
        return self


class LockMonitoringSettings(BaseModel):
    enabled: bool = True
    accumulation_minutes: float = 10.0
    grace_seconds: float = 5.0
    max_entries: int = 10_000
    persist_path: str = "data/lock-history.json"
    persist_interval_seconds: float = 60.0
    max_age_on_load_seconds: float = 3600.0
    # False: a conflict escalates once and stays silent until it clears.
    repeat_alerts: bool = True


class WatchQuery(BaseModel):
    name: str
    pattern: str | None = None
    signature: str | None = None
    threshold_ms: float = 1000.0
    level: Level = "warning"

    @model_validator(mode="after")
    def _needs_matcher(self) -> "WatchQuery":
        if not self.pattern and not self.signature:
            msg = f"watch query '{self.name}' needs a pattern or a signature"
            raise ValueError(msg)
        return self


class AICacheSettings(BaseModel):
    type: Literal["memory", "redis"] = "memory"
    ttl_seconds: int = 86_400
    redis_url: str = "redis://localhost:6379/0"
    prefix: str = "dbwatch:"


class AIBudgetSettings(BaseModel):
    max_cost_per_hour: float = 0.10
    alert_on_threshold: float = 0.8
    window_seconds: float = 3600.0


class AITriggerSettings(BaseModel):
    on_level: list[Level] = Field(default_factory=lambda: ["critical"])
    min_execution_time_ms: float = 0.0
    max_ai_calls_per_hour: int = 10


class AIFeatureSettings(BaseModel):
    root_cause_analysis: bool = True
    optimization_suggestion: bool = True


class AISettings(BaseModel):
    enabled: bool = False
    provider: Literal["openai", "anthropic"] = "anthropic"
    model: str = "claude-3-haiku-20240307"
    api_key: SecretStr = SecretStr("")
    base_url: str = ""  # Optional OpenAI-compatible proxy URL
    max_tokens: int = 1000
    temperature: float = 0.2
    cache: AICacheSettings = AICacheSettings()
    budget: AIBudgetSettings = AIBudgetSettings()
    triggers: AITriggerSettings = AITriggerSettings()
    features: AIFeatureSettings = AIFeatureSettings()


class SMTPSettings(BaseModel):
    host: str = ""
    port: int = 587
    username: str = ""
    password: SecretStr = SecretStr("")
    starttls: bool = True


class EmailSettings(BaseModel):
    enabled: bool = False
    smtp: SMTPSettings = SMTPSettings()
    sender: str = ""
    to: list[str] = Field(default_factory=list)
    send_on_levels: list[Level] = Field(default_factory=lambda: ["critical", "warning"])
    throttle_minutes: float = 10.0


class WebhookTarget(BaseModel):
    type: str = "generic"
    url: str
    name: str = ""


class WebhookSettings(BaseModel):
    enabled: bool = False
    webhooks: list[WebhookTarget] = Field(default_factory=list)
    send_on_levels: list[Level] = Field(default_factory=lambda: ["critical", "warning"])
    throttle_minutes: float = 10.0
    timeout_seconds: float = 10.0


class NotificationSettings(BaseModel):
    # "shared": one cooldown per (type, level) across all channels.
    throttle_scope: Literal["shared", "per_channel"] = "shared"


class AlertLogSettings(BaseModel):
    enabled: bool = True
    directory: str = "logs"
    retention_days: int = 30
    max_query_text_length: int = 500


class Settings(BaseSettings):
    """Daemon settings loaded from kwargs, environment, .env and an optional YAML file."""

    data_source: DataSourceSettings = DataSourceSettings()
    thresholds: Thresholds = Thresholds()
    monitoring: MonitoringSettings = MonitoringSettings()
    lock_monitoring: LockMonitoringSettings = LockMonitoringSettings()
    watch_queries: list[WatchQuery] = Field(default_factory=list)
    # Directories of MyBatis/iBatis mapper XML files to load watch signatures from
    watch_mapper_dirs: list[str] = Field(default_factory=list)
    ai: AISettings = AISettings()
    email: EmailSettings = EmailSettings()
    webhook: WebhookSettings = WebhookSettings()
    notifications: NotificationSettings = NotificationSettings()
    alert_log: AlertLogSettings = AlertLogSettings()

    log_level: str = "INFO"
    metrics_port: int = 0  # 0 disables the /metrics endpoint

    model_config: ClassVar[SettingsConfigDict] = SettingsConfigDict(
        env_prefix="DBWATCH_",
        env_nested_delimiter="__",
        env_file=".env",
        env_file_encoding="utf-8",
        yaml_file="dbwatch.yaml",
        extra="ignore",
    )

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        yaml_file = os.environ.get("DBWATCH_CONFIG_FILE") or settings_cls.model_config.get("yaml_file")
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            YamlConfigSettingsSource(settings_cls, yaml_file=yaml_file),
            file_secret_settings,
        )

    def is_check_enabled(self, name: str) -> bool:
        return name in self.monitoring.enabled_checks


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Lazily load and cache settings. Only the entry points call this."""
    return Settings()
