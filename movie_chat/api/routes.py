import logging
import uuid

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from movie_chat.core.cache import get_cache
from movie_chat.core.metrics import metrics
from movie_chat.core.orchestrator import get_orchestrator
from movie_chat.core.text import MAX_INPUT_CHARS

router = APIRouter()
logger = logging.getLogger(__name__)


@router.get("/health")
def health():
    return {"status": "ok", "cache": get_cache().backend}


@router.get("/metrics")
def metrics_endpoint():
    return metrics.snapshot()


@router.post("/chat")
async def chat(request: Request):
    trace_id, request_id, _, traceparent = _extract_ids(request)
    try:
        body = await request.json()
    except Exception:
        return _error_response(
            "invalid_request",
            "Request body must be a valid JSON object.",
            trace_id,
            request_id,
        )
    if not isinstance(body, dict):
        return _error_response(
            "invalid_request",
            "Request body must be a JSON object.",
            trace_id,
            request_id,
        )

    message = body.get("message")
    if not isinstance(message, str) or not message.strip():
        metrics.inc("chat_requests_total", {"result": "missing_message"})
        return _error_response(
            "invalid_message",
            "Field message is required.",
            trace_id,
            request_id,
        )
    if len(message) > MAX_INPUT_CHARS:
        metrics.inc("chat_requests_total", {"result": "message_too_long"})
        return _error_response(
            "invalid_message",
            f"Field message must be at most {MAX_INPUT_CHARS} characters.",
            trace_id,
            request_id,
        )

    session_id = _optional_str(body.get("session_id") or body.get("sessionId"))
    user_id = _optional_str(body.get("user_id") or body.get("userId") or request.headers.get("x-user-id"))

    response = await get_orchestrator().process(message, session_id, user_id)
    metrics.inc("chat_requests_total", {"result": "ok"})
    return JSONResponse(content=response, headers=_response_headers(trace_id, request_id, traceparent))


@router.get("/internal/chat/session/state")
async def chat_session_state(request: Request):
    trace_id, request_id, _, traceparent = _extract_ids(request)
    session_id = str(request.query_params.get("session_id") or "").strip()
    if not session_id:
        metrics.inc("chat_session_state_requests_total", {"result": "missing_session_id"})
        return _error_response(
            "invalid_request",
            "Query parameter session_id is required.",
            trace_id,
            request_id,
        )

    snapshot = await get_orchestrator().session_state(session_id)
    metrics.inc(
        "chat_session_state_requests_total",
        {"result": "ok" if snapshot is not None else "not_found"},
    )
    payload = {
        "version": "v1",
        "trace_id": trace_id,
        "request_id": request_id,
        "status": "ok" if snapshot is not None else "not_found",
        "session": snapshot,
    }
    return JSONResponse(content=payload, headers=_response_headers(trace_id, request_id, traceparent))


@router.post("/internal/chat/session/reset")
async def chat_session_reset(request: Request):
    trace_id, request_id, _, traceparent = _extract_ids(request)
    try:
        body = await request.json()
    except Exception:
        metrics.inc("chat_session_reset_requests_total", {"result": "invalid_json"})
        return _error_response(
            "invalid_request",
            "Request body must be a valid JSON object.",
            trace_id,
            request_id,
        )
    if not isinstance(body, dict):
        metrics.inc("chat_session_reset_requests_total", {"result": "invalid_body"})
        return _error_response(
            "invalid_request",
            "Request body must be a JSON object.",
            trace_id,
            request_id,
        )

    session_id = str(body.get("session_id") or "").strip()
    if not session_id:
        metrics.inc("chat_session_reset_requests_total", {"result": "missing_session_id"})
        return _error_response(
            "invalid_request",
            "Field session_id is required.",
            trace_id,
            request_id,
        )

    applied = bool(await get_orchestrator().reset_session(session_id))
    metrics.inc("chat_session_reset_requests_total", {"result": "ok" if applied else "partial"})
    payload = {
        "version": "v1",
        "trace_id": trace_id,
        "request_id": request_id,
        "status": "ok",
        "session": {"session_id": session_id, "reset_applied": applied},
    }
    return JSONResponse(content=payload, headers=_response_headers(trace_id, request_id, traceparent))


def _optional_str(value) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text[:128] or None


def _extract_ids(request: Request) -> tuple[str, str, str | None, str | None]:
    trace_id = request.headers.get("x-trace-id")
    request_id = request.headers.get("x-request-id")
    traceparent = request.headers.get("traceparent")
    span_id = None

    if not trace_id and traceparent:
        parsed_trace, parsed_span = _parse_traceparent(traceparent)
        trace_id = parsed_trace or trace_id
        span_id = parsed_span

    if not trace_id:
        trace_id = f"trace_{uuid.uuid4().hex}"
    if not request_id:
        request_id = f"req_{uuid.uuid4().hex}"
    return trace_id, request_id, span_id, traceparent


def _parse_traceparent(value: str) -> tuple[str | None, str | None]:
    parts = value.split("-")
    if len(parts) != 4:
        return None, None
    trace_id = parts[1]
    span_id = parts[2]
    if len(trace_id) != 32 or len(span_id) != 16:
        return None, None
    return trace_id, span_id


def _error_response(code: str, message: str, trace_id: str, request_id: str) -> JSONResponse:
    payload = {
        "error": {"code": code, "message": message},
        "trace_id": trace_id,
        "request_id": request_id,
    }
    return JSONResponse(status_code=400, content=payload)


def _response_headers(trace_id: str, request_id: str, traceparent: str | None) -> dict[str, str]:
    headers = {"x-trace-id": trace_id, "x-request-id": request_id}
    if traceparent:
        headers["traceparent"] = traceparent
    return headers
