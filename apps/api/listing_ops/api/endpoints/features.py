from fastapi import APIRouter, Depends, HTTPException, Query
from sqlmodel import Session

from listing_ops.core.database import get_session
from listing_ops.core.exceptions import ListingOpsError
from listing_ops.schemas.jobs import FeatureSnapshotRead
from listing_ops.services.feature_store import get_feature_history, get_latest_features

from .common import http_error

router = APIRouter(prefix="/entities", tags=["features"])


@router.get("/{entity_type}/{entity_id}/features", response_model=FeatureSnapshotRead)
def read_latest_features(entity_type: str, entity_id: int, db: Session = Depends(get_session)):
    try:
        row = get_latest_features(db, entity_type, entity_id)
    except ListingOpsError as exc:
        raise http_error(exc) from exc
    if row is None:
        raise HTTPException(status_code=404, detail="no feature snapshot")
    return row


@router.get("/{entity_type}/{entity_id}/features/history", response_model=list[FeatureSnapshotRead])
def read_feature_history(
    entity_type: str,
    entity_id: int,
    limit: int = Query(default=30, ge=1, le=365),
    db: Session = Depends(get_session),
):
    try:
        return get_feature_history(db, entity_type, entity_id, limit=limit)
    except ListingOpsError as exc:
        raise http_error(exc) from exc
