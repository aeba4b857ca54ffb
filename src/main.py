from uuid import uuid4

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from src.domain.webhook_errors import BeaconWebhookError
from src.routers import beacon_webhooks, internal_beacon_sync


app = FastAPI(title="Beacon Engagement Engine", version="0.1.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def attach_request_id(request: Request, call_next):
    request_id = (
        request.headers.get("X-Request-ID")
        or request.headers.get("X-Correlation-ID")
        or str(uuid4())
    )
    request.state.request_id = request_id
    response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    return response


@app.exception_handler(BeaconWebhookError)
async def beacon_webhook_error_handler(_request: Request, exc: BeaconWebhookError):
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "error": exc.message},
        headers=beacon_webhooks.CORS_HEADERS,
    )


app.include_router(beacon_webhooks.router)
app.include_router(internal_beacon_sync.router)


@app.get("/")
async def root():
    return {"status": "ok", "service": "beacon-engagement-engine"}


@app.get("/health")
async def health():
    return {"status": "healthy"}
