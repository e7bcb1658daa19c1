import os
from dataclasses import dataclass, replace
from typing import Optional

# Keys accepted by 'queuectl config set', mapped to their column in the config table
CONFIG_KEYS = {
    "max-retries": "max_retries",
    "backoff-base": "backoff_base",
    "retention-hours": "retention_hours",
}


@dataclass(frozen=True)
class QueueConfig:
    db_path: Optional[str] = None
    max_retries: int = 3
    backoff_base: int = 0
    poll_interval: float = 1.0
    retention_hours: int = 168
    handlers: Optional[str] = None

    @classmethod
    def from_env(cls, **overrides) -> "QueueConfig":
        config = cls(
            db_path=os.environ.get("QUEUECTL_DB") or None,
            max_retries=int(os.environ.get("QUEUECTL_MAX_RETRIES", "3")),
            backoff_base=int(os.environ.get("QUEUECTL_BACKOFF_BASE", "0")),
            poll_interval=float(os.environ.get("QUEUECTL_POLL_INTERVAL", "1.0")),
            retention_hours=int(os.environ.get("QUEUECTL_RETENTION_HOURS", "168")),
            handlers=os.environ.get("QUEUECTL_HANDLERS") or None,
        )
        overrides = {k: v for k, v in overrides.items() if v is not None}
        return replace(config, **overrides)

    def with_store_overrides(self, store) -> "QueueConfig":
        """Applies values saved with 'queuectl config set' on top of this config."""
        values = {}
        for field_name in CONFIG_KEYS.values():
            stored = store.get_config(field_name)
            if stored is not None:
                values[field_name] = int(stored)
        return replace(self, **values)
