from fastapi import APIRouter

from listing_ops.api.endpoints.features import router as features_router
from listing_ops.api.endpoints.jobs import router as jobs_router
from listing_ops.api.endpoints.publish import router as publish_router
from listing_ops.api.endpoints.recommendations import router as recommendations_router

api_router = APIRouter()
api_router.include_router(jobs_router)
api_router.include_router(publish_router)
api_router.include_router(features_router)
api_router.include_router(recommendations_router)
