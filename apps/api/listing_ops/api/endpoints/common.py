from fastapi import HTTPException

from listing_ops.core.exceptions import (
    ConflictError,
    EntityNotFoundError,
    GuardrailViolationError,
    InvalidJobInputError,
    JobStateError,
    ListingOpsError,
    RecommendationStateError,
    TransientInfrastructureError,
)


def http_error(exc: ListingOpsError) -> HTTPException:
    if isinstance(exc, EntityNotFoundError):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, GuardrailViolationError):
        return HTTPException(status_code=422, detail={"message": str(exc), "violations": exc.violations})
    if isinstance(exc, InvalidJobInputError):
        return HTTPException(status_code=422, detail=str(exc))
    if isinstance(exc, (ConflictError, JobStateError, RecommendationStateError)):
        return HTTPException(status_code=409, detail=str(exc))
    if isinstance(exc, TransientInfrastructureError):
        return HTTPException(status_code=503, detail=str(exc))
    return HTTPException(status_code=400, detail=str(exc))
