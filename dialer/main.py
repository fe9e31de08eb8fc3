"""
Main FastAPI application for the call-control proxy.

Holds provider credentials server-side and exposes token, call-action,
upload, call-log and pingback endpoints to agent dialers.
"""

from fastapi import FastAPI, Request, Depends
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from starlette.datastructures import UploadFile
from collections import OrderedDict
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict
import uuid

from dialer.config import settings
from dialer.errors import ProviderError
from dialer.call.broadcast import PingbackBroadcaster
from dialer.call.pingback import parse_pingback
from dialer.provider import CallControlProvider, get_call_control_provider
from dialer.utils.logging import get_logger, request_id_var

logger = get_logger(__name__)

MAX_CALL_LOGS = 1000


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Manage application lifecycle.
    """
    logger.info("Starting call-control proxy...")

    app.state.provider = get_call_control_provider()
    app.state.broadcaster = PingbackBroadcaster()
    app.state.call_logs = OrderedDict()

    logger.info("Call-control proxy started successfully")

    yield

    logger.info("Shutting down call-control proxy...")
    await app.state.provider.close()
    logger.info("Call-control proxy shut down")


app = FastAPI(
    title="CRM VoIP Dialer",
    description="Call-control proxy and pingback stream for agent dialers",
    version="1.0.0",
    lifespan=lifespan
)

if settings.enable_cors:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )


def get_provider(request: Request) -> CallControlProvider:
    return request.app.state.provider


def get_broadcaster(request: Request) -> PingbackBroadcaster:
    return request.app.state.broadcaster


def get_call_logs(request: Request) -> "OrderedDict[str, Dict[str, Any]]":
    return request.app.state.call_logs


async def _json_body(request: Request) -> Dict[str, Any]:
    try:
        body = await request.json()
    except ValueError:
        return {}
    return body if isinstance(body, dict) else {}


def _provider_failure(error: str, response) -> JSONResponse:
    return JSONResponse(
        {"error": error, "details": response.text},
        status_code=response.status_code,
    )


@app.middleware("http")
async def add_request_id(request: Request, call_next):
    """Add request ID to context for logging."""
    request_id = str(uuid.uuid4())
    request_id_var.set(request_id)

    response = await call_next(request)
    response.headers["X-Request-ID"] = request_id

    return response


@app.get("/health")
async def health_check(broadcaster: PingbackBroadcaster = Depends(get_broadcaster)):
    """Health check endpoint."""
    return {
        "status": "healthy",
        "pingback_listeners": broadcaster.listener_count,
        "provider": settings.call_control_provider.value,
        "environment": settings.environment.value
    }


@app.post("/auth-token")
async def auth_token(request: Request, provider: CallControlProvider = Depends(get_provider)):
    """
    Issue a provider token for a line.
    Body: {"lineId": optional CLI number}
    """
    body = await _json_body(request)
    line_id = body.get("lineId") or body.get("cli_number")

    credentials = settings.get_line_credentials(line_id)
    if credentials is None:
        logger.warning("Missing provider credentials", line_id=line_id)
        return JSONResponse({"error": "Missing credentials configuration"}, status_code=400)

    try:
        response = await provider.issue_token(credentials.username, credentials.password)
    except ProviderError as e:
        logger.error("Auth token request failed", error=str(e))
        return JSONResponse({"error": "Authentication service unavailable"}, status_code=502)

    if not response.ok:
        return _provider_failure("Authentication failed", response)

    return JSONResponse(response.body or {})


@app.post("/call-action")
async def call_action(request: Request, provider: CallControlProvider = Depends(get_provider)):
    """
    Forward a call-control action to the provider.
    Body: {"token": str, "endpoint": str, "payload": object}
    """
    body = await _json_body(request)
    token = body.get("token")
    endpoint = body.get("endpoint")
    payload = body.get("payload")

    if not endpoint or not payload:
        return JSONResponse({"error": "Missing endpoint or payload"}, status_code=400)

    if endpoint != provider.AUTH_ENDPOINT and (not token or not str(token).strip()):
        return JSONResponse({"error": f"Missing token for endpoint {endpoint}"}, status_code=400)

    logger.info("Forwarding call action", endpoint=endpoint)

    try:
        response = await provider.call_endpoint(endpoint, payload, token=token)
    except ProviderError as e:
        logger.error("Call action request failed", endpoint=endpoint, error=str(e))
        return JSONResponse({"error": "Call-control service unavailable"}, status_code=502)

    if not response.ok:
        return _provider_failure(f"Provider error: {response.status_code}", response)

    return JSONResponse(response.body if response.body is not None else {})


@app.post("/upload-voice")
async def upload_voice(request: Request, provider: CallControlProvider = Depends(get_provider)):
    """Forward a voice file to the provider. Requires an Authorization header."""
    authorization = request.headers.get("authorization")
    if not authorization:
        return JSONResponse({"error": "Missing authorization token"}, status_code=401)

    form = await request.form()
    upload = form.get("file")
    if not isinstance(upload, UploadFile):
        return JSONResponse({"error": "No file uploaded"}, status_code=400)

    content = await upload.read()
    logger.info("Forwarding voice upload", filename=upload.filename, size=len(content))

    try:
        response = await provider.upload_voice(
            authorization,
            upload.filename or "upload.bin",
            content,
            content_type=upload.content_type,
        )
    except ProviderError as e:
        logger.error("Voice upload failed", error=str(e))
        return JSONResponse({"error": "Upload service unavailable"}, status_code=502)

    if not response.ok:
        return _provider_failure("Voice upload failed", response)

    return JSONResponse(response.body if response.body is not None else {})


@app.post("/call-logs")
async def save_call_log(request: Request, call_logs=Depends(get_call_logs)):
    """Create or update the log entry for a call reference."""
    body = await _json_body(request)
    reference_id = body.get("referenceId")
    status = body.get("status")

    if not reference_id or not status:
        return JSONResponse({"message": "Missing parameters"}, status_code=400)

    entry = call_logs.pop(reference_id, {"reference_id": reference_id, "history": []})
    entry.update({
        "cli": body.get("cli") or entry.get("cli"),
        "a_party": body.get("aParty") or entry.get("a_party"),
        "b_party": body.get("bParty") or entry.get("b_party"),
        "status": status,
        "updated_at": datetime.now(timezone.utc).isoformat(),
    })
    entry["history"].append(status)
    call_logs[reference_id] = entry

    while len(call_logs) > MAX_CALL_LOGS:
        call_logs.popitem(last=False)

    logger.info("Call log saved", reference_id=reference_id, status=status)
    return {"message": "Call log saved/updated"}


@app.get("/call-logs")
async def list_call_logs(call_logs=Depends(get_call_logs)):
    """Most recent call log entries first."""
    entries = list(reversed(call_logs.values()))
    return {"total": len(entries), "logs": entries}


async def _pingback_payload(request: Request) -> Dict[str, Any]:
    if request.method == "GET":
        return dict(request.query_params)

    content_type = request.headers.get("content-type", "")
    if "application/x-www-form-urlencoded" in content_type or "multipart/form-data" in content_type:
        form = await request.form()
        return {key: value for key, value in form.items() if isinstance(value, str)}
    return await _json_body(request)


@app.api_route("/pingback", methods=["GET", "POST"])
async def pingback(request: Request, broadcaster: PingbackBroadcaster = Depends(get_broadcaster)):
    """
    Provider call-status webhook.
    Normalizes the payload and fans it out to connected dialers.
    """
    raw = await _pingback_payload(request)
    if not raw:
        return JSONResponse({"error": "Empty pingback"}, status_code=400)

    event = parse_pingback(raw)
    broadcaster.broadcast(event)

    return {"status": "success", "received": True, "type": event.kind.value}


@app.get("/pingback/stream")
async def pingback_stream(broadcaster: PingbackBroadcaster = Depends(get_broadcaster)):
    """Server-Sent Events stream of classified pingbacks."""
    return StreamingResponse(
        broadcaster.stream(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "Connection": "keep-alive"},
    )


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "dialer.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        log_level=settings.log_level.lower()
    )
