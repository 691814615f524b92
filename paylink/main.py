import json
from contextlib import asynccontextmanager

import structlog
from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from paylink.brand_routes import router as brand_router
from paylink.config import get_settings
from paylink.contact_routes import router as contact_router
from paylink.database import init_db
from paylink.dependencies import get_reconciler
from paylink.errors import PaymentLinkError, ProcessorError
from paylink.log import configure_logging
from paylink.routes import callback_router, router as payment_router
from paylink.webhooks import REJECTED, WebhookReconciler, is_well_formed

settings = get_settings()
configure_logging(settings.log_level)
logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    logger.info("paylink_started", paypal_mode=settings.paypal_mode,
                webhook_verification=bool(settings.paypal_webhook_id))
    yield
    logger.info("paylink_stopped")


app = FastAPI(title="Brand Payment Link Service", lifespan=lifespan)

app.include_router(payment_router, prefix="/api/payments", tags=["Payments"])
app.include_router(callback_router, tags=["Payment callbacks"])
app.include_router(brand_router, prefix="/api/brands", tags=["Brands"])
app.include_router(contact_router, prefix="/api/contact-requests", tags=["Contact requests"])


@app.exception_handler(PaymentLinkError)
async def payment_link_error_handler(request: Request, exc: PaymentLinkError):
    log = logger.error if exc.status_code >= 500 else logger.warning
    log("request_failed", path=request.url.path, error_code=exc.error_code,
        message=exc.message, details=exc.details)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(RequestValidationError)
async def request_validation_error_handler(request: Request, exc: RequestValidationError):
    logger.warning("request_invalid", path=request.url.path)
    return JSONResponse(
        status_code=400,
        content={
            "error_code": "validation_error",
            "message": "Invalid request",
            "details": {"errors": jsonable_encoder(exc.errors())},
        },
    )


@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, exc: Exception):
    logger.error("request_crashed", path=request.url.path, exc_info=exc)
    return JSONResponse(
        status_code=500,
        content={"error_code": "internal_error", "message": "An unexpected error occurred",
                 "details": {}},
    )


@app.post("/api/webhooks/paypal")
async def paypal_webhook(request: Request, reconciler: WebhookReconciler = Depends(get_reconciler)):
    """
    Acknowledge every structurally valid, verified event with 200.

    A rejected signature answers 400. If PayPal's verification endpoint cannot
    be reached the answer is 503, so PayPal redelivers the event later instead
    of it being treated as forged.
    """
    payload = await request.body()

    try:
        event = json.loads(payload)
    except ValueError:
        logger.warning("webhook_invalid_json")
        return {"ok": True, "outcome": REJECTED}

    # Malformed events are acknowledged so the processor does not keep retrying them
    if not is_well_formed(event):
        logger.warning("webhook_malformed")
        return {"ok": True, "outcome": REJECTED}

    try:
        verified = await run_in_threadpool(reconciler.verify, dict(request.headers), event)
    except ProcessorError as exc:
        logger.error("webhook_verification_unavailable", event_id=event.get("id"),
                     error=exc.message, details=exc.details)
        raise HTTPException(status_code=503, detail="Signature verification unavailable")

    if not verified:
        logger.warning("webhook_signature_invalid", event_id=event.get("id"))
        raise HTTPException(status_code=400, detail="Invalid signature")

    try:
        outcome = await run_in_threadpool(reconciler.handle, event)
    except Exception:
        # Always acknowledge; a retry storm is worse than a missed update
        logger.exception("webhook_processing_failed", event_id=event.get("id"))
        outcome = "error"

    return {"ok": True, "outcome": outcome}


@app.get("/api/health")
def health_check():
    return {"status": "healthy", "paypal_mode": settings.paypal_mode}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("paylink.main:app", host="0.0.0.0", port=8000,
                log_level=settings.log_level.lower())
