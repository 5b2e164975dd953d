"""
Configuration loader for the feed relay.
Reads settings from YAML file with environment variable substitution.
"""
from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml


@dataclass
class StageOverride:
    max_attempts: int = 3
    timeout_s: float = 30.0


@dataclass
class PipelineConfig:
    retry_count: int = 3                # max attempts for retrying stages
    timeout_s: float = 30.0             # per-attempt timeout
    backoff_base_s: float = 1.0         # wait 2^attempt * base between attempts
    stage_overrides: dict[str, StageOverride] = field(default_factory=dict)

    def policy_args(self, stage: str) -> tuple[int, float]:
        override = self.stage_overrides.get(stage)
        if override:
            return override.max_attempts, override.timeout_s
        return self.retry_count, self.timeout_s


@dataclass
class QueueConfig:
    base_delay_s: float = 1.0
    max_delay_s: float = 60.0
    max_retries: int = 3
    tick_interval_s: float = 0.1
    throttle_decay_after_s: float = 10.0
    dead_letter_limit: int = 1000


@dataclass
class CircuitConfig:
    threshold: int = 5
    reset_timeout_s: float = 30.0
    test_interval_s: float = 5.0


@dataclass
class CredentialsConfig:
    keys: list[str] = field(default_factory=list)
    cooldown_s: float = 1200.0          # 20 minutes after a throttle
    stagger_s: float = 60.0             # added per credential index
    max_consecutive_failures: int = 3
    error_threshold: int = 5
    health_reset_interval_s: float = 1800.0
    rotate_on: str = "error"            # "error" | "unhealthy"


@dataclass
class PollerConfig:
    interval_s: float = 60.0
    inter_item_delay_s: float = 1.0
    page_size: int = 100
    max_age_minutes: float = 60.0


@dataclass
class UpstreamConfig:
    base_url: str = ""
    search_path: str = "/search"
    item_path: str = ""                 # e.g. "/items/{item_id}"; empty disables hydration
    auth_header: str = "Authorization"
    timeout_s: float = 30.0


@dataclass
class DownstreamConfig:
    type: str = "recording"             # "telegram" | "recording"
    bot_token: str = ""
    api_base: str = "https://api.telegram.org"
    messages_per_minute: int = 20
    timeout_s: float = 30.0


@dataclass
class StorageConfig:
    seen_backend: str = "memory"        # "memory" | "file" | "redis"
    data_dir: str = "./data"
    redis_url: str = "redis://localhost:6379"
    circuit_backend: str = "memory"     # "memory" | "file"


@dataclass
class TopicConfig:
    destination: str
    query: str = ""
    filters: list[dict[str, str]] = field(default_factory=list)
    enabled: bool = True


@dataclass
class Settings:
    app_name: str = "FeedRelay"
    debug: bool = False
    pipeline: PipelineConfig = field(default_factory=PipelineConfig)
    queue: QueueConfig = field(default_factory=QueueConfig)
    circuit: CircuitConfig = field(default_factory=CircuitConfig)
    credentials: CredentialsConfig = field(default_factory=CredentialsConfig)
    poller: PollerConfig = field(default_factory=PollerConfig)
    upstream: UpstreamConfig = field(default_factory=UpstreamConfig)
    downstream: DownstreamConfig = field(default_factory=DownstreamConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    topics: dict[str, TopicConfig] = field(default_factory=dict)


_settings: Optional[Settings] = None


def _substitute_env_vars(value: str) -> str:
    """Replace ${VAR_NAME} patterns with environment variable values."""
    pattern = re.compile(r'\$\{(\w+)\}')
    def replacer(match):
        var_name = match.group(1)
        return os.environ.get(var_name, match.group(0))
    return pattern.sub(replacer, value)


def _process_values(obj: Any) -> Any:
    """Recursively substitute env vars in all string values."""
    if isinstance(obj, str):
        return _substitute_env_vars(obj)
    elif isinstance(obj, dict):
        return {k: _process_values(v) for k, v in obj.items()}
    elif isinstance(obj, list):
        return [_process_values(v) for v in obj]
    return obj


def _split_keys(value: Any) -> list[str]:
    """Accept a YAML list or a comma-separated string (typical for ${ENV} values)."""
    if isinstance(value, str):
        return [k.strip() for k in value.split(",") if k.strip()]
    return [str(k) for k in value or [] if k]


def load_settings(config_path: str = None) -> Settings:
    """Load settings from YAML file."""
    global _settings

    if config_path is None:
        config_path = os.environ.get(
            "RELAY_CONFIG",
            str(Path(__file__).parent / "settings.yaml"),
        )

    settings = Settings()

    if Path(config_path).exists():
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}
        raw = _process_values(raw)

        settings.app_name = raw.get("app_name", settings.app_name)
        settings.debug = raw.get("debug", settings.debug)

        if "pipeline" in raw:
            p = raw["pipeline"]
            settings.pipeline = PipelineConfig(
                retry_count=int(p.get("retry_count", 3)),
                timeout_s=float(p.get("timeout_s", 30.0)),
                backoff_base_s=float(p.get("backoff_base_s", 1.0)),
                stage_overrides={
                    name: StageOverride(
                        max_attempts=int(o.get("max_attempts", p.get("retry_count", 3))),
                        timeout_s=float(o.get("timeout_s", p.get("timeout_s", 30.0))),
                    )
                    for name, o in (p.get("stage_overrides") or {}).items()
                },
            )

        if "queue" in raw:
            q = raw["queue"]
            settings.queue = QueueConfig(
                base_delay_s=float(q.get("base_delay_s", 1.0)),
                max_delay_s=float(q.get("max_delay_s", 60.0)),
                max_retries=int(q.get("max_retries", 3)),
                tick_interval_s=float(q.get("tick_interval_s", 0.1)),
                throttle_decay_after_s=float(q.get("throttle_decay_after_s", 10.0)),
                dead_letter_limit=int(q.get("dead_letter_limit", 1000)),
            )

        if "circuit" in raw:
            c = raw["circuit"]
            settings.circuit = CircuitConfig(
                threshold=int(c.get("threshold", 5)),
                reset_timeout_s=float(c.get("reset_timeout_s", 30.0)),
                test_interval_s=float(c.get("test_interval_s", 5.0)),
            )

        if "credentials" in raw:
            cr = raw["credentials"]
            rotate_on = cr.get("rotate_on", "error")
            if rotate_on not in ("error", "unhealthy"):
                raise ValueError(f"credentials.rotate_on must be 'error' or 'unhealthy', got {rotate_on!r}")
            settings.credentials = CredentialsConfig(
                keys=_split_keys(cr.get("keys")),
                cooldown_s=float(cr.get("cooldown_s", 1200.0)),
                stagger_s=float(cr.get("stagger_s", 60.0)),
                max_consecutive_failures=int(cr.get("max_consecutive_failures", 3)),
                error_threshold=int(cr.get("error_threshold", 5)),
                health_reset_interval_s=float(cr.get("health_reset_interval_s", 1800.0)),
                rotate_on=rotate_on,
            )

        if "poller" in raw:
            po = raw["poller"]
            settings.poller = PollerConfig(
                interval_s=float(po.get("interval_s", 60.0)),
                inter_item_delay_s=float(po.get("inter_item_delay_s", 1.0)),
                page_size=int(po.get("page_size", 100)),
                max_age_minutes=float(po.get("max_age_minutes", 60.0)),
            )

        if "upstream" in raw:
            up = raw["upstream"]
            settings.upstream = UpstreamConfig(
                base_url=up.get("base_url", ""),
                search_path=up.get("search_path", "/search"),
                item_path=up.get("item_path", ""),
                auth_header=up.get("auth_header", "Authorization"),
                timeout_s=float(up.get("timeout_s", 30.0)),
            )

        if "downstream" in raw:
            dn = raw["downstream"]
            settings.downstream = DownstreamConfig(
                type=dn.get("type", "recording"),
                bot_token=dn.get("bot_token", ""),
                api_base=dn.get("api_base", "https://api.telegram.org"),
                messages_per_minute=int(dn.get("messages_per_minute", 20)),
                timeout_s=float(dn.get("timeout_s", 30.0)),
            )

        if "storage" in raw:
            st = raw["storage"]
            settings.storage = StorageConfig(
                seen_backend=st.get("seen_backend", "memory"),
                data_dir=st.get("data_dir", "./data"),
                redis_url=st.get("redis_url", "redis://localhost:6379"),
                circuit_backend=st.get("circuit_backend", "memory"),
            )

        if "topics" in raw:
            for scope, t in (raw["topics"] or {}).items():
                settings.topics[scope] = TopicConfig(
                    destination=str(t["destination"]),
                    query=t.get("query", ""),
                    filters=list(t.get("filters") or []),
                    enabled=t.get("enabled", True),
                )

    _settings = settings
    return settings


def get_settings() -> Settings:
    """Return cached settings or load from default path."""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings
