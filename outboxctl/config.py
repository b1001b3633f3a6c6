import logging
import math
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Mapping

from dotenv import load_dotenv

log = logging.getLogger(__name__)

# Values from .env become visible to click's envvar lookups.
load_dotenv(Path.cwd() / ".env", override=False)

DEFAULT_DB_FILE = "outbox.db"

DEFAULT_CONFIG = {
    "max_attempts": "5",
    "backoff_strategy": "fixed",        # fixed | exponential
    "backoff_seconds": "300",
    "backoff_cap_seconds": "3600",
    "lease_timeout_seconds": "600",     # worker's own stale-lease horizon
    "orphan_timeout_seconds": "1800",   # watchdog horizon
    "orphan_requeue_delay_seconds": "300",
    "batch_size": "5",
    "poll_interval_seconds": "5",
    "transport_timeout_seconds": "60",
    "sweep_interval_seconds": "43200",
    "sweep_startup_delay_seconds": "300",
    "stale_lead_days": "30",
}

ALLOWED_CONFIG_KEYS = set(DEFAULT_CONFIG.keys())
STRING_CONFIG_KEYS = {"backoff_strategy"}
BACKOFF_STRATEGIES = ("fixed", "exponential")


@dataclass(frozen=True)
class Settings:
    max_attempts: int = 5
    backoff_strategy: str = "fixed"
    backoff_seconds: int = 300
    backoff_cap_seconds: int = 3600
    lease_timeout_seconds: int = 600
    orphan_timeout_seconds: int = 1800
    orphan_requeue_delay_seconds: int = 300
    batch_size: int = 5
    poll_interval_seconds: float = 5
    transport_timeout_seconds: float = 60
    sweep_interval_seconds: float = 43200
    sweep_startup_delay_seconds: float = 300
    stale_lead_days: int = 30

    @classmethod
    def from_mapping(cls, cfg: Mapping[str, str]) -> "Settings":
        """Build from config-table strings; bad values fall back to defaults."""
        values = {}
        for f in fields(cls):
            raw = cfg.get(f.name, DEFAULT_CONFIG[f.name])
            try:
                values[f.name] = parse_config_value(f.name, raw)
            except ValueError:
                log.warning("invalid config %s=%r; using default", f.name, raw)
                values[f.name] = parse_config_value(f.name, DEFAULT_CONFIG[f.name])
        return cls(**values)

    @property
    def effective_transport_timeout(self) -> float:
        # A send that outlives the lease is treated as abandoned anyway.
        return min(self.transport_timeout_seconds, self.lease_timeout_seconds)


_CASTS = {
    f.name: float if f.type in (float, "float") else int
    for f in fields(Settings)
    if f.name not in STRING_CONFIG_KEYS
}


def parse_config_value(key: str, raw):
    """Cast one stored config string to its Settings type. Raises ValueError if it does not fit."""
    if key not in ALLOWED_CONFIG_KEYS:
        raise ValueError(f"Allowed keys: {', '.join(sorted(ALLOWED_CONFIG_KEYS))}")
    if key in STRING_CONFIG_KEYS:
        if raw not in BACKOFF_STRATEGIES:
            raise ValueError(f"{key} must be one of: {', '.join(BACKOFF_STRATEGIES)}")
        return raw
    cast = _CASTS[key]
    kind = "whole number" if cast is int else "number"
    try:
        value = cast(str(raw).strip())
    except ValueError:
        raise ValueError(f"{key} must be a positive {kind}.") from None
    if not math.isfinite(value) or value <= 0:
        raise ValueError(f"{key} must be a positive {kind}.")
    return value
