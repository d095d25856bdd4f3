"""Error taxonomy shared by the job engine and its collaborators.

The executor maps these onto job outcomes:

* ``TransientInfrastructureError``: store or lock service unreachable. The
  job is re-queued without consuming an attempt.
* ``RetryableJobError``: counted against attempts, backed off linearly.
* ``PermanentJobError``: fails the job immediately.
* ``ConflictError``: the requested work already exists or the entity is busy.
"""
from __future__ import annotations

from typing import Any


class ListingOpsError(Exception):
    pass


class TransientInfrastructureError(ListingOpsError):
    pass


class JobStoreUnavailableError(TransientInfrastructureError):
    pass


class RetryableJobError(ListingOpsError):
    pass


class PermanentJobError(ListingOpsError):
    pass


class InvalidJobInputError(PermanentJobError):
    pass


class EntityNotFoundError(PermanentJobError):
    def __init__(self, entity_type: str, entity_id: int | None) -> None:
        super().__init__(f"{entity_type} {entity_id} not found")
        self.entity_type = entity_type
        self.entity_id = entity_id


class GuardrailViolationError(PermanentJobError):
    def __init__(self, violations: list[dict[str, Any]]) -> None:
        rules = ",".join(str(item.get("rule") or "") for item in violations) or "unknown"
        super().__init__(f"guardrail violations: {rules}")
        self.violations = violations


class CredentialsMissingError(PermanentJobError):
    def __init__(self, missing: list[str]) -> None:
        super().__init__(f"missing credentials: {', '.join(missing)}")
        self.missing = list(missing)


class MarketDataUnavailableError(RetryableJobError):
    pass


class MarketDataNotFoundError(PermanentJobError):
    pass


class MarketplacePublishError(ListingOpsError):
    def __init__(self, message: str, *, retryable: bool) -> None:
        super().__init__(message)
        self.retryable = retryable


class ConflictError(ListingOpsError):
    pass


class EntityLockBusyError(ConflictError):
    def __init__(self, entity_type: str, entity_id: int) -> None:
        super().__init__(f"entity lock busy for {entity_type}:{entity_id}")
        self.entity_type = entity_type
        self.entity_id = entity_id


class JobStateError(ListingOpsError):
    pass


class RecommendationStateError(ListingOpsError):
    pass
