# config.py
from dataclasses import dataclass, fields

DEFAULTS = {
    "stale_minutes": "5",
    "reclaim_interval_seconds": "60",
    "heartbeat_interval_seconds": "30",
    "poll_interval_seconds": "10",
    "default_max_retries": "3",
}


@dataclass
class Settings:
    stale_minutes: float = 5
    reclaim_interval_seconds: float = 60
    heartbeat_interval_seconds: float = 30
    poll_interval_seconds: float = 10
    default_max_retries: int = 3

    @classmethod
    def from_storage(cls, db):
        """Read every known key from the config table, falling back to defaults."""
        values = {}
        for f in fields(cls):
            raw = db.get_config(f.name, default=DEFAULTS[f.name])
            try:
                values[f.name] = int(raw) if f.type is int else float(raw)
            except (TypeError, ValueError):
                values[f.name] = f.default
        return cls(**values)
