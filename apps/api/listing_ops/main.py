from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI

from listing_ops.api.router import api_router
from listing_ops.core.config import settings
from listing_ops.core.credentials import has_marketplace_credentials, has_price_data_credentials
from listing_ops.core.database import init_db
from listing_ops.core.logging_config import configure_logging

logger = logging.getLogger("listing_ops.startup")


def _emit_startup_notice() -> None:
    if not has_marketplace_credentials():
        logger.warning(
            "NOTICE: marketplace credentials are not configured. Publish jobs run in simulated mode."
        )
    if not has_price_data_credentials():
        logger.warning("NOTICE: KEEPA_API_KEY is empty. Market data sync jobs will fail until it is set.")


@asynccontextmanager
async def lifespan(_: FastAPI):
    configure_logging()
    init_db()
    _emit_startup_notice()
    yield


app = FastAPI(title="listing-ops-api", lifespan=lifespan)
app.include_router(api_router, prefix=settings.api_prefix)


@app.get("/health")
def health():
    return {"ok": True, "config_profile": settings.config_profile}
