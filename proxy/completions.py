import asyncio
import re
import time
from contextlib import AsyncExitStack
from dataclasses import dataclass
from typing import Any, AsyncGenerator, AsyncIterator, Dict, List, Optional, Set

import httpx

import transcoder
from errors import RETRYABLE_ERRORS, APIError, UpstreamAuthError, UpstreamProtocolError
from logging_config import get_logger
from upstream import UploadedFile, UpstreamClient, dumps_form

logger = get_logger(__name__)

CHARACTER_ID = "1"
CHAT_URI = "/v4/api/chat/msg"
FILE_ATTENTION_PROMPT = "关注用户最新发送文件和消息"
REPEAT_PROMPT = "请原封不动地复述以下内容，不要添加任何其他文字：\n"
TRANSCRIBE_PROMPT = "请原封不动地复述我刚才说的话，不要添加任何其他文字"

_REF_CONV_ID_RE = re.compile(r"[0-9]{18}")
_MD_IMAGE_RE = re.compile(r"!\[.+\]\(.+\)")
_SANDBOX_PATH_RE = re.compile(r"/mnt/data/.+")
_ROLE_MARKERS = {"system": "<|system|>", "assistant": "<|assistant|>", "user": "<|user|>"}


@dataclass(frozen=True)
class ConversationHandle:
    id: str
    message_id: Optional[str] = None


def extract_ref_file_urls(messages: List[Dict[str, Any]]) -> List[str]:
    """File/image URLs attached to the latest message only."""
    urls: List[str] = []
    if not messages:
        return urls
    content = messages[-1].get("content") if isinstance(messages[-1], dict) else None
    if not isinstance(content, list):
        return urls
    for v in content:
        if not isinstance(v, dict):
            continue
        if v.get("type") == "file" and isinstance(v.get("file_url"), dict) and isinstance(v["file_url"].get("url"), str):
            urls.append(v["file_url"]["url"])
        elif (
            v.get("type") == "image_url"
            and isinstance(v.get("image_url"), dict)
            and isinstance(v["image_url"].get("url"), str)
        ):
            urls.append(v["image_url"]["url"])
    return urls


def _has_attachment(message: Dict[str, Any]) -> bool:
    content = message.get("content")
    return isinstance(content, list) and any(
        isinstance(v, dict) and v.get("type") in ("file", "image_url") for v in content
    )


def _text_parts(content: Any) -> List[str]:
    if isinstance(content, list):
        return [str(v.get("text") or "") for v in content if isinstance(v, dict) and v.get("type") == "text"]
    return [str(content if content is not None else "")]


def merge_messages(messages: List[Dict[str, Any]], ref_conv_id: str = "") -> str:
    """
    Collapse an OpenAI message list into the single prompt the upstream accepts.

    Continuations and single messages pass through verbatim; longer histories get
    role markers and end with an open assistant turn.
    """
    if ref_conv_id or len(messages) < 2:
        content = ""
        for message in messages:
            for text in _text_parts(message.get("content")):
                content += f"{text}\n"
        return content

    messages = list(messages)
    if _has_attachment(messages[-1]):
        # the upstream tends to ignore trailing attachments in long threads
        messages.insert(len(messages) - 1, {"role": "system", "content": FILE_ATTENTION_PROMPT})

    content = ""
    for message in messages:
        role = str(message.get("role") or "user")
        marker = _ROLE_MARKERS.get(role, f"<|{role}|>")
        for text in _text_parts(message.get("content")):
            content += f"{marker}\n{text}\n"
    content += "<|assistant|>\n"
    content = _MD_IMAGE_RE.sub("", content)
    content = _SANDBOX_PATH_RE.sub("", content)
    return content


def prepare_payload(messages: List[Dict[str, Any]], refs: List[UploadedFile], ref_conv_id: str = "") -> Dict[str, Any]:
    payload: Dict[str, Any] = {
        "characterID": CHARACTER_ID,
        "msgContent": merge_messages(messages, ref_conv_id).strip(),
        "chatID": ref_conv_id or "0",
        "searchMode": "0",
    }
    if refs:
        payload["form"] = dumps_form(refs)
    return payload


def normalize_ref_conv_id(ref_conv_id: Optional[str]) -> str:
    if ref_conv_id and _REF_CONV_ID_RE.search(str(ref_conv_id)):
        return str(ref_conv_id)
    return ""


class RelayStream:
    """SSE frames relayed from one open upstream stream. ``aclose`` releases the stream even if never iterated."""

    def __init__(self, frames: AsyncGenerator[bytes, None], stack: AsyncExitStack) -> None:
        self._frames = frames
        self._stack = stack

    def __aiter__(self) -> "RelayStream":
        return self

    async def __anext__(self) -> bytes:
        return await self._frames.__anext__()

    async def aclose(self) -> None:
        try:
            await self._frames.aclose()
        finally:
            await self._stack.aclose()


class CompletionService:
    """
    One chat turn against the upstream: upload references, open the signed
    stream, transcode it, retry transport/protocol failures, clean up after.
    """

    def __init__(self, upstream: UpstreamClient, *, max_retry_count: int = 3, retry_delay: float = 5.0) -> None:
        self.upstream = upstream
        self.max_retry_count = max_retry_count
        self.retry_delay = retry_delay
        self._cleanup_tasks: Set["asyncio.Task[None]"] = set()

    # -----------------------------
    # Stream plumbing
    # -----------------------------

    def _stream_headers(self, ref_conv_id: str) -> Dict[str, str]:
        base = self.upstream.base_url
        return {
            "Accept": "text/event-stream",
            "Referer": f"{base}/?chat={ref_conv_id}" if ref_conv_id else f"{base}/",
        }

    async def _open(self, stack: AsyncExitStack, payload: Dict[str, Any], token: str, ref_conv_id: str) -> httpx.Response:
        identity = await self.upstream.acquire_identity(token)
        response = await stack.enter_async_context(
            self.upstream.open_stream("POST", CHAT_URI, payload, token, identity, headers=self._stream_headers(ref_conv_id))
        )
        if response.status_code in (401, 403):
            self.upstream.sessions.evict(token)
            raise UpstreamAuthError(f"upstream rejected the session [{response.status_code}]")
        content_type = response.headers.get("content-type", "")
        if response.status_code >= 400 or "text/event-stream" not in content_type:
            body = (await response.aread()).decode("utf-8", errors="replace")
            logger.error("Invalid upstream stream response", status=response.status_code, content_type=content_type, body=body[:500])
            raise UpstreamProtocolError(f"invalid stream response [{response.status_code}] {content_type}")
        return response

    async def _retry_wait(self, attempt: int, exc: APIError) -> None:
        logger.error("Stream response error", error=exc.message, attempt=attempt)
        logger.warning(f"Try again after {self.retry_delay}s...")
        await asyncio.sleep(self.retry_delay)

    async def _complete(self, payload: Dict[str, Any], token: str, ref_conv_id: str, model: str) -> Dict[str, Any]:
        attempt = 0
        while True:
            try:
                async with AsyncExitStack() as stack:
                    response = await self._open(stack, payload, token, ref_conv_id)
                    started = time.monotonic()
                    answer = await transcoder.collect_completion(self.upstream.iter_lines(response), model)
                logger.info(
                    "Stream has completed transfer",
                    elapsed_ms=int((time.monotonic() - started) * 1000),
                    conversation_id=answer["id"],
                )
                return answer
            except RETRYABLE_ERRORS as exc:
                if attempt >= self.max_retry_count:
                    raise
                attempt += 1
                await self._retry_wait(attempt, exc)

    async def _upload_refs(self, messages: List[Dict[str, Any]], token: str) -> List[UploadedFile]:
        urls = extract_ref_file_urls(messages)
        logger.info("Uploading referenced files", count=len(urls))
        if not urls:
            return []
        return list(await asyncio.gather(*(self.upstream.upload_file(url, token) for url in urls)))

    # -----------------------------
    # Cleanup
    # -----------------------------

    async def remove_conversation(self, conversation_id: str, token: str) -> None:
        await self.upstream.remove_conversation(conversation_id, token)

    async def _remove_quietly(self, conversation_id: str, token: str) -> None:
        try:
            await self.remove_conversation(conversation_id, token)
        except APIError as exc:
            logger.warning("Conversation cleanup failed", conversation_id=conversation_id, error=exc.message)

    def schedule_cleanup(self, conversation_id: str, token: str, ref_conv_id: str = "") -> None:
        # Never delete a thread the caller is continuing; it is user-visible history.
        if ref_conv_id or not conversation_id:
            return
        task = asyncio.ensure_future(self._remove_quietly(conversation_id, token))
        self._cleanup_tasks.add(task)
        task.add_done_callback(self._cleanup_tasks.discard)

    async def drain_cleanup(self) -> None:
        if self._cleanup_tasks:
            await asyncio.gather(*list(self._cleanup_tasks), return_exceptions=True)

    # -----------------------------
    # Public operations
    # -----------------------------

    async def create_completion(
        self,
        messages: List[Dict[str, Any]],
        token: str,
        ref_conv_id: Optional[str] = "",
        model: str = transcoder.MODEL_NAME,
    ) -> Dict[str, Any]:
        logger.info("Chat completion requested", messages=len(messages), stream=False)
        refs = await self._upload_refs(messages, token)
        ref_conv_id = normalize_ref_conv_id(ref_conv_id)
        payload = prepare_payload(messages, refs, ref_conv_id)
        answer = await self._complete(payload, token, ref_conv_id, model)
        self.schedule_cleanup(answer["id"], token, ref_conv_id)
        return answer

    async def create_completion_stream(
        self,
        messages: List[Dict[str, Any]],
        token: str,
        ref_conv_id: Optional[str] = "",
        model: str = transcoder.MODEL_NAME,
    ) -> AsyncIterator[bytes]:
        """
        Open the upstream stream (with retries) and return the SSE byte iterator.

        Upload and auth failures raise here, before anything is sent to the client.
        When the retry budget runs out the iterator carries an apology chunk.
        """
        logger.info("Chat completion requested", messages=len(messages), stream=True)
        refs = await self._upload_refs(messages, token)
        ref_conv_id = normalize_ref_conv_id(ref_conv_id)
        payload = prepare_payload(messages, refs, ref_conv_id)

        attempt = 0
        while True:
            stack = AsyncExitStack()
            try:
                response = await self._open(stack, payload, token, ref_conv_id)
                break
            except RETRYABLE_ERRORS as exc:
                await stack.aclose()
                if attempt >= self.max_retry_count:
                    logger.error("Stream retries exhausted", error=exc.message, attempts=attempt + 1)
                    return transcoder.unavailable_stream(model)
                attempt += 1
                await self._retry_wait(attempt, exc)
            except BaseException:
                await stack.aclose()
                raise

        return RelayStream(self._relay(stack, response, token, ref_conv_id, model), stack)

    async def _relay(
        self,
        stack: AsyncExitStack,
        response: httpx.Response,
        token: str,
        ref_conv_id: str,
        model: str,
    ) -> AsyncGenerator[bytes, None]:
        started = time.monotonic()

        def _on_complete(result: transcoder.StreamResult) -> None:
            logger.info(
                "Stream has completed transfer",
                elapsed_ms=int((time.monotonic() - started) * 1000),
                conversation_id=result.conversation_id,
            )
            self.schedule_cleanup(result.conversation_id, token, ref_conv_id)

        try:
            async for frame in transcoder.transcode_stream(self.upstream.iter_lines(response), model, _on_complete):
                yield frame
        finally:
            await stack.aclose()

    async def create_repeat_completion(self, model: str, content: str, token: str) -> ConversationHandle:
        """
        Have the upstream echo ``content`` back to obtain a conversation/message handle.

        The conversation is left in place; the caller deletes it when done.
        """
        payload = prepare_payload([{"role": "user", "content": f"{REPEAT_PROMPT}{content}"}], [])
        answer = await self._complete(payload, token, "", model)
        if not answer["id"] or not answer.get("message_id"):
            raise UpstreamProtocolError("repeat completion returned no conversation handle")
        return ConversationHandle(id=answer["id"], message_id=answer["message_id"])

    async def create_transcription(self, audio: bytes, token: str, model: str = transcoder.MODEL_NAME) -> str:
        payload: Dict[str, Any] = {
            "characterID": CHARACTER_ID,
            "msgContent": TRANSCRIBE_PROMPT,
            "chatID": "0",
            "searchMode": "0",
            "voiceBytes": audio,
        }
        answer = await self._complete(payload, token, "", model)
        self.schedule_cleanup(answer["id"], token)
        return str(answer["choices"][0]["message"]["content"]).strip()
