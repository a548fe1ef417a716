import asyncio
import base64
import json
import mimetypes
import re
import time
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import PurePosixPath
from typing import Any, AsyncIterator, Callable, Dict, Optional, Tuple
from urllib.parse import urlparse

import httpx
import oss2

import signing
from device_session import DEVICE_INFO_EXPIRES, DeviceIdentity, DeviceSessionManager
from errors import (
    APIError,
    FileValidationError,
    TransportError,
    UpstreamAuthError,
    UpstreamProtocolError,
    UpstreamRequestError,
)
from logging_config import get_logger

logger = get_logger(__name__)

FILE_MAX_SIZE = 100 * 1024 * 1024
UNARY_TIMEOUT = 15.0
STREAM_IDLE_TIMEOUT = 120.0
FILE_PROBE_TIMEOUT = 15.0
FILE_DOWNLOAD_TIMEOUT = 60.0

# Upstream file type codes.
FILE_TYPE_IMAGE = 2
FILE_TYPE_DOCUMENT = 6

IMAGE_MIME_TYPES = {
    "image/jpeg",
    "image/jpg",
    "image/tiff",
    "image/png",
    "image/bmp",
    "image/gif",
    "image/svg+xml",
    "image/webp",
    "image/ico",
    "image/heic",
    "image/heif",
    "image/x-icon",
    "image/vnd.microsoft.icon",
    "image/x-png",
}

_BASE64_DATA_RE = re.compile(r"^data:([a-zA-Z0-9.+\-]+/[a-zA-Z0-9.+\-]+);base64,", re.IGNORECASE)


@dataclass(frozen=True)
class UploadedFile:
    file_type: int
    filename: str
    file_id: str

    def to_form(self) -> Dict[str, Any]:
        return {"name": self.filename, "fileID": self.file_id, "type": self.file_type}


def is_base64_data(value: str) -> bool:
    return isinstance(value, str) and _BASE64_DATA_RE.match(value) is not None


def decode_base64_data(value: str) -> Tuple[str, bytes]:
    m = _BASE64_DATA_RE.match(value)
    if not m:
        raise FileValidationError("not a base64 data url")
    mime_type = m.group(1).lower()
    try:
        raw = base64.b64decode(value[m.end():], validate=False)
    except (ValueError, TypeError) as exc:
        raise FileValidationError(f"invalid base64 payload: {exc}") from exc
    return mime_type, raw


def _guess_extension(mime_type: str) -> str:
    preferred = {"image/jpeg": ".jpg", "image/png": ".png", "audio/mpeg": ".mp3", "text/plain": ".txt"}
    if mime_type in preferred:
        return preferred[mime_type]
    return mimetypes.guess_extension(mime_type or "") or ".bin"


def check_result(response: httpx.Response) -> Any:
    """Unwrap the upstream ``{statusInfo, data}`` envelope."""
    if not response.content:
        return None
    try:
        body = response.json()
    except ValueError as exc:
        raise UpstreamProtocolError(
            f"upstream returned non-JSON body [{response.status_code}]: {response.text[:200]}"
        ) from exc
    if not isinstance(body, dict):
        return body
    status_info = body.get("statusInfo")
    if not isinstance(status_info, dict):
        return body
    if status_info.get("code") == 0:
        return body.get("data")
    raise UpstreamRequestError(f"[upstream request failed]: {status_info.get('message')}")


def _oss_put_object(policy: Dict[str, Any], key: str, data: bytes) -> None:
    auth = oss2.StsAuth(policy["accessKeyId"], policy["accessKeySecret"], policy["securityToken"])
    bucket = oss2.Bucket(auth, policy["endpoint"], policy["bucketName"])
    bucket.put_object(key, data)


class UpstreamClient:
    """
    Signed access to the upstream web API.

    Every call needs a device identity for its token; identities come from the
    injected ``DeviceSessionManager`` whose registration hook is this client's
    ``register_device``.
    """

    def __init__(
        self,
        base_url: str = signing.UPSTREAM_ORIGIN,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        put_object: Callable[[Dict[str, Any], str, bytes], None] = _oss_put_object,
        sessions: Optional[DeviceSessionManager] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._transport = transport
        self._put_object = put_object
        self.sessions = sessions or DeviceSessionManager(self.register_device)

    def _client(self, **kwargs: Any) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=self._transport, **kwargs)

    def _base_headers(self, token: str, yy: str, extra: Optional[Dict[str, str]]) -> Dict[str, str]:
        headers = {"Origin": self.base_url, "Referer": f"{self.base_url}/"}
        if extra:
            headers.update(extra)
        return signing.build_headers(token, yy, headers)

    # -----------------------------
    # Device identity
    # -----------------------------

    async def register_device(self, token: str) -> DeviceIdentity:
        user_id = str(uuid.uuid4())
        try:
            resp = await self.request(
                "POST",
                "/v1/api/user/device/register",
                {"uuid": user_id},
                token,
                DeviceIdentity(user_id=user_id),
            )
            data = check_result(resp)
        except UpstreamRequestError as exc:
            raise UpstreamAuthError(f"device registration rejected: {exc.message}") from exc
        device_id = (data or {}).get("deviceIDStr") if isinstance(data, dict) else None
        if not device_id:
            raise UpstreamAuthError("device registration returned no device id")
        return DeviceIdentity(
            user_id=user_id,
            device_id=str(device_id),
            refresh_time=int(time.time()) + DEVICE_INFO_EXPIRES,
        )

    async def acquire_identity(self, token: str) -> DeviceIdentity:
        return await self.sessions.acquire(token)

    # -----------------------------
    # Signed requests
    # -----------------------------

    async def request(
        self,
        method: str,
        uri: str,
        data: Any,
        token: str,
        identity: DeviceIdentity,
        *,
        headers: Optional[Dict[str, str]] = None,
        timeout: float = UNARY_TIMEOUT,
    ) -> httpx.Response:
        unix = signing.unix_millis()
        full_uri = signing.join_uri(uri, signing.build_query(identity, unix))
        yy = signing.sign_unary(full_uri, data, unix)
        req_headers = self._base_headers(token, yy, headers)
        kwargs: Dict[str, Any] = {}
        if method.upper() not in ("GET", "HEAD", "DELETE"):
            req_headers["Content-Type"] = "application/json"
            kwargs["content"] = signing.compact_json(data).encode("utf-8")
        try:
            async with self._client(timeout=timeout) as client:
                resp = await client.request(method, f"{self.base_url}{full_uri}", headers=req_headers, **kwargs)
        except httpx.HTTPError as exc:
            raise TransportError(f"{method} {uri} failed: {exc!r}") from exc
        if resp.status_code in (401, 403):
            raise UpstreamAuthError(f"{method} {uri} rejected [{resp.status_code}]")
        return resp

    async def request_data(self, method: str, uri: str, data: Any, token: str, **kwargs: Any) -> Any:
        """Signed request with the cached identity; evicts the identity if the upstream rejects it."""
        identity = await self.acquire_identity(token)
        try:
            resp = await self.request(method, uri, data, token, identity, **kwargs)
        except UpstreamAuthError:
            self.sessions.evict(token)
            raise
        return check_result(resp)

    @asynccontextmanager
    async def open_stream(
        self,
        method: str,
        uri: str,
        data: Dict[str, Any],
        token: str,
        identity: DeviceIdentity,
        *,
        headers: Optional[Dict[str, str]] = None,
    ) -> AsyncIterator[httpx.Response]:
        """
        Open a streamed multipart request on a fresh HTTP/2 connection.

        The connection is torn down when the context exits, whatever the outcome.
        """
        unix = signing.unix_millis()
        path = signing.join_uri(uri, signing.build_query(identity, unix))
        yy = signing.sign_stream(path, data, unix)
        req_headers = self._base_headers(token, yy, headers)

        files: Dict[str, Any] = {}
        for key, value in data.items():
            if not value:
                continue
            if isinstance(value, (bytes, bytearray)):
                files[key] = ("audio.mp3", bytes(value), "audio/mp3")
            else:
                files[key] = (None, str(value))

        timeout = httpx.Timeout(STREAM_IDLE_TIMEOUT, connect=UNARY_TIMEOUT)
        client = self._client(http2=True, timeout=timeout)
        try:
            request = client.build_request(method, f"{self.base_url}{path}", headers=req_headers, files=files)
            try:
                response = await client.send(request, stream=True)
            except httpx.HTTPError as exc:
                raise TransportError(f"failed to open upstream stream: {exc!r}") from exc
            try:
                yield response
            finally:
                await response.aclose()
        finally:
            await client.aclose()

    async def iter_lines(self, response: httpx.Response) -> AsyncIterator[str]:
        try:
            async for line in response.aiter_lines():
                yield line
        except httpx.HTTPError as exc:
            raise TransportError(f"upstream stream interrupted: {exc!r}") from exc

    # -----------------------------
    # Conversations
    # -----------------------------

    async def remove_conversation(self, conversation_id: str, token: str) -> None:
        await self.request_data("DELETE", f"/v1/api/chat/history/{conversation_id}", {}, token)

    async def token_live_status(self, token: str) -> bool:
        try:
            data = await self.request_data("GET", "/v1/api/user/info", {}, token)
        except APIError as exc:
            logger.warning("Token liveness check failed", token=token, error=exc.message)
            self.sessions.evict(token)
            return False
        return isinstance(data, dict) and isinstance(data.get("userInfo"), dict)

    # -----------------------------
    # Files
    # -----------------------------

    async def check_file_url(self, file_url: str) -> None:
        if is_base64_data(file_url):
            return
        parsed = urlparse(file_url)
        if parsed.scheme not in ("http", "https"):
            raise FileValidationError(f"File {file_url} is not valid: unsupported scheme")
        try:
            async with self._client(timeout=FILE_PROBE_TIMEOUT, follow_redirects=True) as client:
                resp = await client.head(file_url)
        except httpx.HTTPError as exc:
            raise FileValidationError(f"File {file_url} is not valid: {exc!r}") from exc
        if resp.status_code >= 400:
            raise FileValidationError(f"File {file_url} is not valid: [{resp.status_code}] {resp.reason_phrase}")
        length = resp.headers.get("content-length")
        if length and length.isdigit() and int(length) > FILE_MAX_SIZE:
            raise FileValidationError(
                f"File {file_url} is not valid: exceeds {FILE_MAX_SIZE} bytes",
                code=FileValidationError.FILE_EXCEEDS_SIZE,
            )

    async def _download(self, file_url: str) -> bytes:
        chunks = []
        total = 0
        try:
            async with self._client(timeout=FILE_DOWNLOAD_TIMEOUT, follow_redirects=True) as client:
                async with client.stream("GET", file_url) as resp:
                    if resp.status_code >= 400:
                        raise FileValidationError(f"File {file_url} is not valid: [{resp.status_code}]")
                    async for chunk in resp.aiter_bytes():
                        total += len(chunk)
                        if total > FILE_MAX_SIZE:
                            raise FileValidationError(
                                f"File {file_url} is not valid: exceeds {FILE_MAX_SIZE} bytes",
                                code=FileValidationError.FILE_EXCEEDS_SIZE,
                            )
                        chunks.append(chunk)
        except httpx.HTTPError as exc:
            raise FileValidationError(f"File {file_url} download failed: {exc!r}") from exc
        return b"".join(chunks)

    async def upload_file(self, file_url: str, token: str) -> UploadedFile:
        await self.check_file_url(file_url)

        if is_base64_data(file_url):
            mime_type, file_data = decode_base64_data(file_url)
            filename = f"{uuid.uuid4()}{_guess_extension(mime_type)}"
        else:
            suffix = PurePosixPath(urlparse(file_url).path).suffix
            filename = f"{uuid.uuid4()}{suffix}"
            file_data = await self._download(file_url)
            mime_type = mimetypes.guess_type(filename)[0] or "application/octet-stream"

        policy = await self.request_data("GET", "/v1/api/files/request_policy", {}, token)
        if not isinstance(policy, dict) or not policy.get("dir"):
            raise UpstreamProtocolError("upload policy response is missing fields")

        key = f"{policy['dir']}/{filename}"
        try:
            await asyncio.to_thread(self._put_object, policy, key, file_data)
        except oss2.exceptions.OssError as exc:
            raise UpstreamRequestError(f"object storage upload failed: {exc}") from exc

        callback = await self.request_data(
            "POST",
            "/v1/api/files/policy_callback",
            {
                "fileName": filename,
                "originFileName": filename,
                "dir": policy["dir"],
                "endpoint": policy.get("endpoint"),
                "bucketName": policy.get("bucketName"),
                "size": str(len(file_data)),
                "mimeType": mime_type,
            },
            token,
        )
        file_id = (callback or {}).get("fileID") if isinstance(callback, dict) else None
        if not file_id:
            raise UpstreamProtocolError("upload callback returned no file id")

        logger.info("File uploaded", filename=filename, mime_type=mime_type, size=len(file_data))
        return UploadedFile(
            file_type=FILE_TYPE_IMAGE if mime_type in IMAGE_MIME_TYPES else FILE_TYPE_DOCUMENT,
            filename=filename,
            file_id=str(file_id),
        )

    async def download(self, url: str, *, timeout: float = 30.0) -> httpx.Response:
        try:
            async with self._client(timeout=timeout, follow_redirects=True) as client:
                return await client.get(url, headers={"Referer": f"{self.base_url}/"})
        except httpx.HTTPError as exc:
            raise TransportError(f"download {url} failed: {exc!r}") from exc


def dumps_form(refs: Any) -> str:
    return json.dumps([r.to_form() for r in refs], ensure_ascii=False, separators=(",", ":"))
