import hmac
import logging
from functools import lru_cache

import sqlalchemy.exc
from fastapi import Depends, FastAPI, HTTPException, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from payhook import __version__
from payhook.core.config import DedupBackend, get_settings
from payhook.db import crud, schemas
from payhook.db.session import SessionLocal
from payhook.errors import DedupStoreUnavailable, MalformedPayload
from payhook.middleware.body_size import BodySizeLimitMiddleware
from payhook.services.dedup import (
    DatabaseDedupStore,
    DedupStore,
    InMemoryDedupStore,
    RedisDedupStore,
    release,
)
from payhook.services.verifier import DeliveryState, WebhookVerifier
from payhook.storage.archive import archive_raw_body
from payhook.storage.archive import get_s3_client as _make_s3_client
from payhook.tasks import process_delivery

settings = get_settings()
logging.basicConfig(level=settings.log_level)
logger = logging.getLogger(__name__)

app = FastAPI(
    title="Payhook",
    description="Verified, deduplicated intake for payment gateway webhooks",
    version=__version__,
)
bearer_scheme = HTTPBearer(auto_error=False)

# Add body size middleware
app.add_middleware(BodySizeLimitMiddleware, max_bytes=settings.max_body_bytes)

# Add CORS middleware using settings.allowed_origins
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins.split(","),
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["*"],
    allow_credentials=True,
)


@app.on_event("startup")
async def startup():
    """Log the effective intake configuration."""
    settings = get_settings()
    if not settings.hitpay_salt.get_secret_value():
        logger.warning("HITPAY_SALT is not set: every delivery will be rejected")
    logger.info(
        f"Dedup backend={settings.dedup_backend.value} "
        f"policy={settings.dedup_failure_policy.value} "
        f"ttl={settings.dedup_ttl_seconds}s"
    )


# ---------- dependencies ----------
def db_session():
    try:
        db: Session = SessionLocal()
        try:
            yield db
        finally:
            db.close()
    except (sqlalchemy.exc.SQLAlchemyError, sqlalchemy.exc.DBAPIError) as e:
        logger.error(f"Database error: {e}")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Database connection failed",
        )


@lru_cache
def get_dedup_store() -> DedupStore:
    settings = get_settings()
    if settings.dedup_backend == DedupBackend.MEMORY:
        logger.warning("Using in-memory dedup store; not shared between workers")
        return InMemoryDedupStore(settings.dedup_ttl_seconds)
    if settings.dedup_backend == DedupBackend.DATABASE:
        return DatabaseDedupStore(SessionLocal)
    return RedisDedupStore.from_url(settings.redis_url, settings.dedup_ttl_seconds)


def get_verifier(store: DedupStore = Depends(get_dedup_store)) -> WebhookVerifier:
    return WebhookVerifier.from_settings(get_settings(), store)


def get_s3_client():
    settings = get_settings()
    if not settings.archive_bucket:
        return None
    return _make_s3_client(settings)


def require_admin(creds: HTTPAuthorizationCredentials | None = Depends(bearer_scheme)):
    expected = get_settings().admin_token.get_secret_value()
    if (
        not expected
        or creds is None
        or not hmac.compare_digest(creds.credentials.encode(), expected.encode())
    ):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing admin token",
        )


@app.get("/health", include_in_schema=False)
async def health():
    settings = get_settings()
    return {
        "status": "ok",
        "settings": {
            "salt_configured": bool(settings.hitpay_salt.get_secret_value()),
            "dedup_backend": settings.dedup_backend.value,
            "dedup_failure_policy": settings.dedup_failure_policy.value,
            "archive_bucket": settings.archive_bucket,
            "forwarding": bool(settings.forward_url),
        },
    }


# ---------- ingress ----------
@app.post("/webhooks/hitpay")
async def receive_webhook(
    request: Request,
    db: Session = Depends(db_session),
    verifier: WebhookVerifier = Depends(get_verifier),
    s3_client=Depends(get_s3_client),
):
    raw = await request.body()

    try:
        outcome = await run_in_threadpool(verifier.receive, raw, request.headers)
    except DedupStoreUnavailable:
        # not acknowledged, so the gateway delivers it again later
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Deduplication store unavailable",
        )

    if not outcome.accepted:
        if isinstance(outcome.error, MalformedPayload):
            raise HTTPException(status_code=400, detail="Malformed payload")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid signature"
        )

    if outcome.state == DeliveryState.DUPLICATE:
        return {"status": "received", "duplicate": True}

    try:
        delivery = crud.record_delivery(db, outcome.event, raw)
    except Exception as e:
        # the redelivery must count as new, or the event is never processed
        logger.error(f"Failed to record delivery for {outcome.event.event_id}: {e}")
        db.rollback()
        release(outcome.event.event_id, verifier.store)
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Delivery could not be recorded",
        )
    logger.info(f"Recorded delivery {delivery.id} for event {delivery.event_key}")

    archive_raw_body(
        s3_client,
        get_settings().archive_bucket,
        delivery.kind,
        delivery.sha256,
        raw,
        request.headers.get("content-type", "application/octet-stream"),
    )

    try:
        result = process_delivery.delay(str(delivery.id), 1)
        logger.info(f"Task queued with ID {result.id}")
    except Exception as e:
        # acknowledged anyway; the delivery stays queued and can be replayed
        logger.error(f"Failed to queue task: {e}", exc_info=True)

    return {"status": "received", "duplicate": False}


# ---------- delivery log ----------
@app.get(
    "/deliveries",
    response_model=list[schemas.DeliveryOut],
    dependencies=[Depends(require_admin)],
)
def list_deliveries(
    status_filter: str | None = None,
    limit: int = 100,
    db: Session = Depends(db_session),
):
    return crud.list_deliveries(db, status=status_filter, limit=min(limit, 500))


@app.get(
    "/deliveries/{delivery_id}",
    response_model=schemas.DeliveryDetail,
    dependencies=[Depends(require_admin)],
)
def get_delivery(delivery_id: int, db: Session = Depends(db_session)):
    delivery = crud.get_delivery(db, delivery_id)
    if not delivery:
        raise HTTPException(status_code=404, detail="Delivery not found")
    return delivery


@app.post(
    "/deliveries/{delivery_id}/replay",
    status_code=status.HTTP_202_ACCEPTED,
    response_model=schemas.DeliveryReplayResponse,
    dependencies=[Depends(require_admin)],
    description="Run the handlers again for a stored delivery.",
)
def replay_delivery(delivery_id: int, db: Session = Depends(db_session)):
    delivery = crud.get_delivery(db, delivery_id)
    if not delivery:
        raise HTTPException(status_code=404, detail="Delivery not found")

    crud.requeue(db, delivery)
    process_delivery.delay(str(delivery.id), 1)

    return {"status": "queued", "delivery_id": delivery.id}
