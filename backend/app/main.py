"""
Nubimed -> GoHighLevel webhook receiver.
FastAPI application that relays Nubimed booking callbacks into the GHL CRM.
"""

import logging
import os

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from app.routers import webhooks
from app.services.event_log import log_error

# Configure logging to output to console
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)

logger = logging.getLogger(__name__)

SERVICE_NAME = "Nubimed-GHL Integration Webhook Receiver"
VERSION = "1.0.0"

app = FastAPI(
    title="Nubimed GHL Webhook",
    description="Relays Nubimed booking notifications into GoHighLevel contacts and calendars",
    version=VERSION,
)

app.include_router(webhooks.router, prefix="/webhook", tags=["webhooks"])


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Last-resort handler: framework-level faults are the only source of 5xx."""
    log_error("UNHANDLED_ERROR", {
        "path": request.url.path,
        "error": str(exc),
    })
    logger.exception("Unhandled error", exc_info=exc)
    return JSONResponse(
        status_code=500,
        content={"status": "error", "message": "Internal server error"},
    )


@app.on_event("startup")
async def log_startup() -> None:
    logger.info(
        "%s v%s listening on port %s",
        SERVICE_NAME,
        VERSION,
        os.getenv("PORT", "3000"),
    )


@app.get("/")
async def root():
    return {"status": "ok", "service": SERVICE_NAME, "version": VERSION}


@app.get("/health")
async def health():
    return {"status": "ok"}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=int(os.getenv("PORT", "3000")))
