from listing_ops.models.features import FeatureSnapshot
from listing_ops.models.jobs import Job, JobDeadLetter
from listing_ops.models.listings import (
    AsinEntity,
    Listing,
    ListingEvent,
    MarketSnapshot,
    SalesDaily,
)
from listing_ops.models.recommendations import Recommendation, RecommendationEvent

__all__ = [
    "Job",
    "JobDeadLetter",
    "FeatureSnapshot",
    "Listing",
    "AsinEntity",
    "ListingEvent",
    "MarketSnapshot",
    "SalesDaily",
    "Recommendation",
    "RecommendationEvent",
]
