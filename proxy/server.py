import os
import re
import time
import uuid
from typing import Any, Dict, List, Tuple

import structlog
from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse, PlainTextResponse, Response, StreamingResponse
from starlette.background import BackgroundTask

import speech
from completions import CompletionService
from credentials import pick_token
from errors import APIError, RequestParamsInvalid
from logging_config import configure_logging, get_logger
from transcoder import MODEL_NAME
from upstream import UpstreamClient


load_dotenv()


# -----------------------------
# Config
# -----------------------------

UPSTREAM_BASE_URL = os.getenv("UPSTREAM_BASE_URL", "https://hailuoai.com").rstrip("/")
MAX_RETRY_COUNT = max(0, int(os.getenv("MAX_RETRY_COUNT", "3")))
RETRY_DELAY = max(0.0, float(os.getenv("RETRY_DELAY", "5")))
REPLACE_AUDIO_MODEL = speech.parse_voice_overrides(os.getenv("REPLACE_AUDIO_MODEL", ""))
TTS_POLL_INTERVAL = max(0.0, float(os.getenv("TTS_POLL_INTERVAL", "1")))
TTS_TIMEOUT = max(1.0, float(os.getenv("TTS_TIMEOUT", "30")))

LISTEN_HOST = os.getenv("LISTEN_HOST", "127.0.0.1")
LISTEN_PORT = int(os.getenv("LISTEN_PORT", "8000"))
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_FORMAT = os.getenv("LOG_FORMAT", "json")

MAX_AUDIO_SIZE = 25 * 1024 * 1024
ALLOWED_AUDIO_TYPES = {
    "audio/mpeg",
    "audio/mp3",
    "audio/wav",
    "audio/x-wav",
    "audio/wave",
    "audio/ogg",
    "audio/webm",
    "audio/flac",
    "audio/x-flac",
    "audio/mp4",
    "audio/m4a",
    "audio/x-m4a",
}
TEXT_RESPONSE_FORMATS = {"text", "srt", "vtt"}

MODELS: List[Dict[str, Any]] = [
    {"id": "abab6-chat", "object": "model", "owned_by": "hailuo-proxy"},
    {"id": "abab5.5s-chat", "object": "model", "owned_by": "hailuo-proxy"},
    {"id": "abab5.5-chat", "object": "model", "owned_by": "hailuo-proxy"},
]

configure_logging(LOG_LEVEL, LOG_FORMAT)
logger = get_logger(__name__)

upstream_client = UpstreamClient(UPSTREAM_BASE_URL)
completion_service = CompletionService(upstream_client, max_retry_count=MAX_RETRY_COUNT, retry_delay=RETRY_DELAY)
speech_service = speech.SpeechService(
    upstream_client,
    completion_service,
    voice_overrides=REPLACE_AUDIO_MODEL,
    poll_interval=TTS_POLL_INTERVAL,
    timeout=TTS_TIMEOUT,
)


# -----------------------------
# Request helpers
# -----------------------------


def _require_token(request: Request) -> str:
    token = pick_token(request.headers.get("authorization"))
    if not token:
        raise HTTPException(status_code=401, detail="missing bearer token")
    return token


async def _json_body(request: Request) -> Dict[str, Any]:
    try:
        body = await request.json()
    except Exception:
        raise HTTPException(status_code=400, detail="request body must be valid JSON")
    if not isinstance(body, dict):
        raise HTTPException(status_code=400, detail="invalid json body")
    return body


def _validate_messages(messages: Any) -> List[Dict[str, Any]]:
    if not isinstance(messages, list) or not messages:
        raise RequestParamsInvalid("messages must be a non-empty array")
    for m in messages:
        if not isinstance(m, dict):
            raise RequestParamsInvalid("each message must be an object")
        content = m.get("content")
        if not isinstance(content, (str, list)):
            raise RequestParamsInvalid("message content must be a string or an array of parts")
    return messages


def _detect_audio_type(file_bytes: bytes, declared: str) -> str:
    if file_bytes.startswith(b"ID3") or file_bytes[:2] in (b"\xFF\xFB", b"\xFF\xF3", b"\xFF\xF2"):
        return "audio/mpeg"
    if len(file_bytes) >= 12 and file_bytes[:4] == b"RIFF" and file_bytes[8:12] == b"WAVE":
        return "audio/wav"
    if file_bytes.startswith(b"OggS"):
        return "audio/ogg"
    if file_bytes.startswith(b"fLaC"):
        return "audio/flac"
    if file_bytes.startswith(b"\x1A\x45\xDF\xA3"):
        return "audio/webm"
    if len(file_bytes) >= 12 and file_bytes[4:8] == b"ftyp":
        return "audio/mp4"
    # Unknown magic: trust the part's declared type only if it is an audio type we accept.
    declared = (declared or "").split(";")[0].strip().lower()
    if declared in ALLOWED_AUDIO_TYPES:
        return declared
    return "application/octet-stream"


def _parse_content_disposition_params(header_value: str) -> Dict[str, str]:
    params: Dict[str, str] = {}
    if not isinstance(header_value, str):
        return params
    for token in header_value.split(";")[1:]:
        token = token.strip()
        if "=" not in token:
            continue
        key, value = token.split("=", 1)
        key = key.strip().lower()
        value = value.strip()
        if value.startswith('"') and value.endswith('"') and len(value) >= 2:
            value = value[1:-1]
        params[key] = value
    return params


def _parse_multipart(content_type: str, body: bytes) -> Dict[str, Tuple[Dict[str, str], bytes]]:
    """Return ``{field name: (part headers + filename, payload)}`` for a form-data body."""
    if not isinstance(content_type, str) or "multipart/form-data" not in content_type.lower():
        raise HTTPException(status_code=400, detail="content-type must be multipart/form-data")

    boundary_match = re.search(r'boundary=(?:"([^"]+)"|([^;]+))', content_type, flags=re.IGNORECASE)
    if not boundary_match:
        raise HTTPException(status_code=400, detail="missing multipart boundary")
    boundary = (boundary_match.group(1) or boundary_match.group(2) or "").strip()
    if not boundary:
        raise HTTPException(status_code=400, detail="invalid multipart boundary")

    fields: Dict[str, Tuple[Dict[str, str], bytes]] = {}
    delimiter = b"--" + boundary.encode("utf-8", errors="ignore")
    for chunk in body.split(delimiter):
        part = chunk
        if part.startswith(b"\r\n"):
            part = part[2:]
        if not part.strip() or part.strip() == b"--":
            continue

        header_block, sep, payload = part.partition(b"\r\n\r\n")
        if not sep:
            continue

        headers: Dict[str, str] = {}
        for raw_line in header_block.split(b"\r\n"):
            line = raw_line.decode("latin-1", errors="ignore")
            if ":" not in line:
                continue
            k, v = line.split(":", 1)
            headers[k.strip().lower()] = v.strip()

        disposition = headers.get("content-disposition", "")
        if "form-data" not in disposition.lower():
            continue
        params = _parse_content_disposition_params(disposition)
        name = params.get("name")
        if not name:
            continue
        if payload.endswith(b"\r\n"):
            payload = payload[:-2]
        if "filename" in params:
            headers["filename"] = os.path.basename(params["filename"].strip() or "upload.bin")
        fields[name] = (headers, payload)
    return fields


# -----------------------------
# App
# -----------------------------

app = FastAPI(title="Hailuo Proxy", version="0.1.0")


@app.middleware("http")
async def _request_context_middleware(request: Request, call_next):
    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(request_id=uuid.uuid4().hex[:12], path=request.url.path)
    started = time.monotonic()
    response = await call_next(request)
    logger.info(
        "Request handled",
        method=request.method,
        status=response.status_code,
        elapsed_ms=int((time.monotonic() - started) * 1000),
    )
    return response


@app.exception_handler(APIError)
async def _api_error_handler(request: Request, exc: APIError) -> JSONResponse:
    logger.warning("Request failed", code=exc.code, error=exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.on_event("startup")
async def _startup() -> None:
    logger.info(
        "Proxy started",
        upstream=UPSTREAM_BASE_URL,
        max_retry_count=MAX_RETRY_COUNT,
        voices=speech.describe(REPLACE_AUDIO_MODEL),
    )


@app.get("/health")
async def health() -> Dict[str, Any]:
    return {"ok": True, "ts": int(time.time())}


@app.get("/v1/models")
async def list_models() -> Dict[str, Any]:
    return {"data": MODELS}


@app.post("/v1/chat/completions")
async def chat_completions(request: Request) -> Any:
    token = _require_token(request)
    body = await _json_body(request)
    messages = _validate_messages(body.get("messages"))
    model = str(body.get("model") or MODEL_NAME)
    ref_conv_id = body.get("conversation_id")
    if ref_conv_id is not None and not isinstance(ref_conv_id, str):
        raise RequestParamsInvalid("conversation_id must be a string")

    if body.get("stream"):
        stream = await completion_service.create_completion_stream(messages, token, ref_conv_id or "", model)
        headers = {
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        }
        return StreamingResponse(
            stream, media_type="text/event-stream", headers=headers, background=BackgroundTask(stream.aclose)
        )

    res = await completion_service.create_completion(messages, token, ref_conv_id or "", model)
    return JSONResponse(res)


@app.post("/v1/audio/speech")
async def audio_speech(request: Request) -> Response:
    token = _require_token(request)
    body = await _json_body(request)
    text = body.get("input")
    voice = body.get("voice")
    if not isinstance(text, str) or not text.strip():
        raise RequestParamsInvalid("input must be a non-empty string")
    if not isinstance(voice, str):
        raise RequestParamsInvalid("voice must be a string")
    model = str(body.get("model") or MODEL_NAME)

    audio = await speech_service.create_speech(model, text, voice, token)
    return Response(content=audio, media_type="audio/mpeg")


@app.post("/v1/audio/transcriptions")
async def audio_transcriptions(request: Request) -> Any:
    token = _require_token(request)
    body = await request.body()
    if len(body) > MAX_AUDIO_SIZE:
        raise HTTPException(status_code=413, detail="audio file too large")
    fields = _parse_multipart(request.headers.get("content-type", ""), body)

    file_field = fields.get("file")
    if file_field is None or "filename" not in file_field[0]:
        raise HTTPException(status_code=400, detail="multipart field 'file' is required")
    part_headers, audio = file_field
    if not audio:
        raise HTTPException(status_code=400, detail="empty file not allowed")
    mime_type = _detect_audio_type(audio, part_headers.get("content-type", ""))
    if mime_type not in ALLOWED_AUDIO_TYPES:
        raise HTTPException(status_code=415, detail=f"unsupported audio type: {mime_type}")

    def _text_field(name: str, default: str) -> str:
        field = fields.get(name)
        if field is None:
            return default
        return field[1].decode("utf-8", errors="replace").strip() or default

    model = _text_field("model", MODEL_NAME)
    response_format = _text_field("response_format", "json").lower()

    text = await completion_service.create_transcription(audio, token, model)
    if response_format in TEXT_RESPONSE_FORMATS:
        return PlainTextResponse(text)
    return {"text": text}


@app.post("/token/check")
async def token_check(request: Request) -> Dict[str, Any]:
    body = await _json_body(request)
    token = body.get("token")
    if not isinstance(token, str) or not token.strip():
        raise RequestParamsInvalid("token must be a non-empty string")
    live = await upstream_client.token_live_status(token.strip())
    return {"live": live}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host=LISTEN_HOST, port=LISTEN_PORT)
