import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI
import uvicorn

from app.api.v1.admin import router as admin_router
from app.api.v1.audit import router as audit_router
from app.api.v1.billing import router as billing_router
from app.api.v1.item_shares import router as item_shares_router
from app.api.v1.webhooks import router as webhooks_router
from app.core.settings import settings
from app.db import model_registry as _model_registry  # noqa: F401
from app.db.session import get_session_factory
from app.workers.subscription_expiry import SubscriptionExpiryWorker


logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(_: FastAPI) -> AsyncIterator[None]:
    worker: SubscriptionExpiryWorker | None = None
    if settings.subscription_worker_enabled:
        worker = SubscriptionExpiryWorker(
            get_session_factory(),
            interval_hours=settings.subscription_check_interval_hours,
        )
        worker.start()
    logger.info("passwall api started (env=%s)", settings.app_env)
    try:
        yield
    finally:
        if worker is not None:
            await worker.stop()


app = FastAPI(title="Passwall API", lifespan=lifespan)
app.include_router(item_shares_router)
app.include_router(billing_router)
app.include_router(admin_router)
app.include_router(webhooks_router)
app.include_router(audit_router)


@app.get("/health")
async def health() -> dict[str, str]:
    return {"status": "ok"}


if __name__ == "__main__":
    uvicorn.run("app.main:app", host=settings.app_host, port=settings.app_port, reload=settings.app_env == "development")
