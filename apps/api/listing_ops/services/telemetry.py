from __future__ import annotations

import logging
from dataclasses import dataclass, field
from threading import Lock
from typing import Any

from listing_ops.core.config import settings

_LOGGER = logging.getLogger(__name__)

_CLIENT_LOCK = Lock()
_LANGFUSE_CLIENT: Any | None = None
_LANGFUSE_INIT_ERROR: str | None = None


@dataclass
class JobTracePayload:
    job_id: int
    job_type: str
    scope_type: str
    entity_id: int | None
    worker_id: str
    attempt: int
    outcome: str
    status: str
    duration_ms: int
    error_class: str = ""
    message: str = ""
    result: dict[str, Any] = field(default_factory=dict)


def _get_langfuse_client() -> Any | None:
    global _LANGFUSE_CLIENT
    global _LANGFUSE_INIT_ERROR
    if not settings.langfuse_enabled:
        return None
    if _LANGFUSE_CLIENT is not None:
        return _LANGFUSE_CLIENT
    if _LANGFUSE_INIT_ERROR is not None:
        return None

    with _CLIENT_LOCK:
        if _LANGFUSE_CLIENT is not None:
            return _LANGFUSE_CLIENT
        if _LANGFUSE_INIT_ERROR is not None:
            return None
        try:
            from langfuse import Langfuse

            _LANGFUSE_CLIENT = Langfuse(
                public_key=settings.langfuse_public_key,
                secret_key=settings.langfuse_secret_key,
                host=settings.langfuse_host,
            )
            return _LANGFUSE_CLIENT
        except Exception as exc:  # pragma: no cover - network
            _LANGFUSE_INIT_ERROR = exc.__class__.__name__
            _LOGGER.warning("langfuse_init_failed error_class=%s", _LANGFUSE_INIT_ERROR)
            return None


def emit_job_trace(payload: JobTracePayload) -> None:
    client = _get_langfuse_client()
    if client is None:
        return

    metadata = {
        "job_id": payload.job_id,
        "job_type": payload.job_type,
        "scope_type": payload.scope_type,
        "entity_id": payload.entity_id,
        "worker_id": payload.worker_id,
        "attempt": payload.attempt,
        "status": payload.status,
        "duration_ms": payload.duration_ms,
        "error_class": payload.error_class,
    }
    try:
        client.trace(
            name=f"job.{payload.job_type.lower()}",
            session_id=f"job-{payload.job_id}",
            input={"scope_type": payload.scope_type, "entity_id": payload.entity_id},
            output={"outcome": payload.outcome, "message": payload.message, "result": payload.result},
            metadata=metadata,
            tags=[payload.outcome],
        )
        if hasattr(client, "flush"):
            client.flush()
    except Exception as exc:  # pragma: no cover - network
        _LOGGER.debug("langfuse_trace_failed job_id=%s error_class=%s", payload.job_id, exc.__class__.__name__)
