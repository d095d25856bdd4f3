from __future__ import annotations

from typing import Any


class RuntimeSettings:
    """Proxy view for worker/queue/trigger runtime settings on root Settings."""

    FIELD_NAMES: tuple[str, ...] = (
        "worker_poll_interval_seconds",
        "worker_batch_size",
        "worker_concurrency",
        "worker_id_prefix",
        "job_default_priority",
        "job_default_max_attempts",
        "job_retry_base_seconds",
        "job_lock_retry_delay_seconds",
        "job_stale_running_seconds",
        "job_stale_recovery_interval_seconds",
        "job_dead_letter_enabled",
        "job_log_max_entries",
        "entity_lock_enabled",
        "entity_lock_backend",
        "trigger_features_after_publish",
        "trigger_features_after_sync",
        "trigger_recommendations_after_features",
        "trigger_priority_step",
        "market_sync_auto_enqueue",
        "market_sync_interval_seconds",
        "market_sync_scheduler_interval_seconds",
        "market_sync_scan_limit",
        "market_sync_sources",
    )

    def __init__(self, root: Any) -> None:
        object.__setattr__(self, "_root", root)

    def __getattr__(self, name: str) -> Any:
        if name in self.FIELD_NAMES:
            return getattr(self._root, name)
        raise AttributeError(name)

    def __setattr__(self, name: str, value: Any) -> None:
        if name in self.FIELD_NAMES:
            setattr(self._root, name, value)
            return
        object.__setattr__(self, name, value)
