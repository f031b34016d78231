import logging
from uuid import uuid4

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware

from .admin_marketplace import router as admin_marketplace_router
from .bid_routes import router as bid_router
from .case_hall import router as case_hall_router
from .config import settings
from .logging_utils import configure_logging
from .trace_context import reset_trace_context, set_trace_context

configure_logging(settings.LOG_LEVEL)
logger = logging.getLogger(__name__)

app = FastAPI(title="LexBid Marketplace API", version="0.4.0")

app.include_router(case_hall_router)  # Attorney case hall (ranked feed)
app.include_router(bid_router)  # Submit / respond / withdraw / select
app.include_router(admin_marketplace_router)  # Ranking config, ops queue

origins = [o.strip() for o in settings.CORS_ORIGINS.split(",") if o.strip()]
if origins:
    wildcard = "*" in origins
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"] if wildcard else origins,
        # Credentials cannot be combined with wildcard origins
        allow_credentials=False if wildcard else True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

app.add_middleware(GZipMiddleware, minimum_size=500)


# Request-scoped chain id, stamped on every log record emitted while handling
@app.middleware("http")
async def trace_request_context(request: Request, call_next):
    incoming_chain_id = request.headers.get("x-chain-id") or request.headers.get(
        "x-request-id"
    )
    chain_id = incoming_chain_id or str(uuid4())

    tokens = set_trace_context(chain_id=chain_id)
    try:
        response = await call_next(request)
    finally:
        reset_trace_context(tokens)

    response.headers.setdefault("X-Chain-ID", chain_id)
    return response


@app.get("/health")
async def health_check():
    """Health check endpoint for monitoring"""
    return {"status": "healthy", "version": app.version}
