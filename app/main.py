import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.core.config import settings
from app.core.chains import build_chain_registry
from app.core.log_config import configure_logging
from app.api.v1.api import api_router

configure_logging(settings.LOG_LEVEL)
logger = logging.getLogger(__name__)


def dispatch_verification(booking_id: str, tx_hash: str, chain_id: int, is_remaining_payment: bool = False) -> None:
    # Verification runs on the Celery worker, never in the request thread
    from app.tasks.jobs import verify_payment
    verify_payment.delay(booking_id, tx_hash, chain_id, is_remaining_payment)


app = FastAPI(title=settings.APP_NAME)
# Fails fast in production when chain/treasury configuration is invalid
app.state.chain_registry = build_chain_registry(settings)
app.state.dispatch_verification = dispatch_verification

# CORS: use CORS_ORIGINS from env in production; default to localhost for dev
_default_origins = [
    "http://127.0.0.1:3000", "http://localhost:3000",
]
_origins = [o.strip() for o in settings.CORS_ORIGINS.split(",") if o.strip()] if settings.CORS_ORIGINS else _default_origins
app.add_middleware(
    CORSMiddleware,
    allow_origins=_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(api_router)


@app.get("/health")
def health():
    return {"status": "ok", "chains": app.state.chain_registry.supported_chain_ids}
