"""
Upstream event stream -> OpenAI chat completion objects.

The upstream sends cumulative snapshots: every event repeats the text of the
current part so far. ``step`` turns one snapshot into the newly produced suffix.
Decorations synthesised here (citations, image markdown, code fences, execution
output, separators) are counted in ``text_offset`` so that
``len(content) - text_offset`` stays aligned with the upstream's raw text.
"""

import json
import re
import time
from dataclasses import dataclass, replace
from typing import Any, AsyncIterable, AsyncIterator, Callable, Dict, Iterator, List, Optional, Tuple

from errors import TransportError, UpstreamProtocolError
from logging_config import get_logger

logger = get_logger(__name__)

MODEL_NAME = "hailuo"
INVALID_CHAR = "\ufffd"
TERMINAL_STATUSES = ("finish", "intervene")
PLACEHOLDER_USAGE = {"prompt_tokens": 1, "completion_tokens": 1, "total_tokens": 2}
UNAVAILABLE_TEXT = "服务暂时不可用，第三方响应错误"

_HTTP_URL_RE = re.compile(r"^(http|https)://")


@dataclass
class TranscoderState:
    content: str = ""
    text_offset: int = 0
    text_chunk_length: int = 0
    code_generating: bool = False
    code_temp: str = ""
    tool_call: bool = False
    last_execution_output: str = ""


@dataclass
class StreamResult:
    """What a finished stream leaves behind, in both modes."""

    conversation_id: str = ""
    message_id: str = ""
    content: str = ""
    # intervention notice appended at termination, already included in content
    tail: str = ""
    finished: bool = False


Segment = Tuple[bool, str]


def _render_item(
    state: TranscoderState, item: Dict[str, Any], part_status: Any, meta: Any
) -> Tuple[int, List[Segment]]:
    """
    Render one content item as ``(retired, segments)``.

    Segments are ``(is_raw, text)``: raw text is cumulative and repeats in every
    snapshot, decorations are only rendered when new. ``retired`` is the length
    of a finished text chunk that leaves the raw text from this item on.
    """
    item_status = item.get("status")
    kind = item.get("type")
    retired = 0
    segments: List[Segment] = []

    # A new item after a finished text chunk starts a paragraph; the finished text
    # no longer appears in later snapshots, so it moves into the offset.
    if item_status == "init" and state.text_chunk_length > 0:
        retired = state.text_chunk_length
        state.text_offset += state.text_chunk_length + 1
        state.text_chunk_length = 0
        segments.append((False, "\n"))

    if kind == "text":
        text = item.get("text")
        text = text if isinstance(text, str) else ""
        if state.tool_call:
            segments.append((False, "\n"))
            state.text_offset += 1
            state.tool_call = False
        if item_status == "finish":
            state.text_chunk_length = len(text)
        segments.append((True, text))

    elif kind == "quote_result" and part_status == "finish" and isinstance(meta, dict) and isinstance(
        meta.get("metadata_list"), list
    ):
        search_text = "".join(
            f"检索 {v.get('title', '')}({v.get('url', '')}) ..." for v in meta["metadata_list"] if isinstance(v, dict)
        ) + "\n"
        state.text_offset += len(search_text)
        state.tool_call = True
        segments.append((False, search_text))

    elif kind == "image" and isinstance(item.get("image"), list) and part_status == "finish":
        image_text = "".join(
            f"![图像]({v.get('image_url')})"
            for v in item["image"]
            if isinstance(v, dict) and isinstance(v.get("image_url"), str) and _HTTP_URL_RE.match(v["image_url"])
        ) + "\n"
        state.text_offset += len(image_text)
        state.tool_call = True
        segments.append((False, image_text))

    elif kind == "code" and item_status == "init":
        code = item.get("code")
        code = code if isinstance(code, str) else ""
        head = ""
        if not state.code_generating:
            state.code_generating = True
            head = "```python\n"
        chunk = code[len(state.code_temp):]
        state.code_temp += chunk
        state.text_offset += len(head) + len(chunk)
        segments.append((False, head + chunk))

    elif kind == "code" and item_status == "finish" and state.code_generating:
        footer = "\n```\n"
        state.code_generating = False
        state.code_temp = ""
        state.text_offset += len(footer)
        segments.append((False, footer))

    elif kind == "execution_output":
        output = item.get("content")
        if isinstance(output, str) and item_status == "done" and output != state.last_execution_output:
            state.last_execution_output = output
            state.text_offset += len(output) + 1
            segments.append((False, output + "\n"))

    return retired, segments


def _iter_items(event: Dict[str, Any]) -> Iterator[Tuple[Any, Any, Dict[str, Any]]]:
    parts = event.get("parts")
    if not isinstance(parts, list):
        return
    for part in parts:
        if not isinstance(part, dict):
            continue
        items = part.get("content")
        if not isinstance(items, list):
            continue
        for item in items:
            if isinstance(item, dict):
                yield part.get("status"), part.get("meta_data"), item


def step(state: TranscoderState, event: Dict[str, Any]) -> Tuple[TranscoderState, str]:
    """
    Apply one non-terminal snapshot and return ``(new_state, delta)``.

    The input state is left untouched. ``len(content) - text_offset`` is how much
    of the snapshot's raw text was already emitted; raw text below that cursor is
    skipped, decorations are emitted where they occur. A snapshot shorter than
    what was already emitted yields an empty delta.

    An unresolved ``\\ufffd`` ends the delta: raw text is emitted up to the
    marker, and no item after it is applied, so a later snapshot renders those
    items again. A marker inside a decoration holds back that whole item.
    """
    start_content = state.content
    state = replace(state)
    raw_done = max(len(state.content) - state.text_offset, 0)
    raw_pos = 0
    delta = ""

    for part_status, meta, item in _iter_items(event):
        before = replace(state)
        retired, segments = _render_item(state, item, part_status, meta)
        raw_pos = max(raw_pos - retired, 0)
        raw_done = max(raw_done - retired, 0)

        piece = ""
        for is_raw, text in segments:
            if is_raw:
                new = text[max(raw_done - raw_pos, 0):]
                raw_pos += len(text)
                raw_done = max(raw_done, raw_pos)
            else:
                new = text
            marker = new.find(INVALID_CHAR)
            if marker == -1:
                piece += new
                continue
            if is_raw:
                delta += piece + new[:marker]
                state.content = start_content + delta
                return state, delta
            before.content = start_content + delta
            return before, delta
        delta += piece

    state.content = start_content + delta
    return state, delta


def is_terminal(event: Dict[str, Any]) -> bool:
    return event.get("status") in TERMINAL_STATUSES


def termination_text(event: Dict[str, Any]) -> str:
    if event.get("status") != "intervene":
        return ""
    last_error = event.get("last_error")
    if isinstance(last_error, dict) and last_error.get("intervene_text"):
        return f"\n\n{last_error['intervene_text']}"
    return ""


async def iter_sse_data(lines: AsyncIterable[str]) -> AsyncIterator[str]:
    """Yield the ``data`` payload of each server-sent event."""
    data_lines: List[str] = []
    async for line in lines:
        line = line.rstrip("\r")
        if not line:
            if data_lines:
                yield "\n".join(data_lines)
                data_lines = []
            continue
        if line.startswith(":"):
            continue
        if line.startswith("data:"):
            value = line[len("data:"):]
            data_lines.append(value[1:] if value.startswith(" ") else value)
        # event:/id:/retry: fields carry nothing we route on
    if data_lines:
        yield "\n".join(data_lines)


def parse_event(data: str) -> Dict[str, Any]:
    try:
        event = json.loads(data)
    except ValueError as exc:
        raise UpstreamProtocolError(f"Stream response invalid: {data[:200]}") from exc
    if not isinstance(event, dict):
        raise UpstreamProtocolError(f"Stream response invalid: {data[:200]}")
    return event


async def iter_deltas(lines: AsyncIterable[str], result: StreamResult) -> AsyncIterator[str]:
    """
    Drive ``step`` over a raw SSE line stream, yielding non-empty deltas in order.

    ``result`` is filled in as the stream goes. Stops after the terminal event,
    whose intervention text lands in ``result.tail`` rather than being yielded.
    """
    state = TranscoderState()
    async for data in iter_sse_data(lines):
        event = parse_event(data)
        if event.get("conversation_id"):
            result.conversation_id = str(event["conversation_id"])
        if event.get("message_id") and not result.message_id:
            result.message_id = str(event["message_id"])

        if is_terminal(event):
            result.tail = termination_text(event)
            result.content += result.tail
            result.finished = True
            return

        state, delta = step(state, event)
        if delta:
            result.content += delta
            yield delta


def completion_object(result: StreamResult, model: str = MODEL_NAME, created: Optional[int] = None) -> Dict[str, Any]:
    return {
        "id": result.conversation_id,
        "message_id": result.message_id,
        "model": model,
        "object": "chat.completion",
        "choices": [
            {
                "index": 0,
                "message": {"role": "assistant", "content": result.content},
                "finish_reason": "stop",
            }
        ],
        "usage": dict(PLACEHOLDER_USAGE),
        "created": created if created is not None else int(time.time()),
    }


def chunk_object(
    conversation_id: str,
    delta: Dict[str, Any],
    *,
    model: str = MODEL_NAME,
    created: int,
    finish_reason: Optional[str] = None,
    usage: bool = False,
) -> Dict[str, Any]:
    obj: Dict[str, Any] = {
        "id": conversation_id,
        "model": model,
        "object": "chat.completion.chunk",
        "choices": [{"index": 0, "delta": delta, "finish_reason": finish_reason}],
        "created": created,
    }
    if usage:
        obj["usage"] = dict(PLACEHOLDER_USAGE)
    return obj


def sse_data(obj: Dict[str, Any]) -> bytes:
    return (f"data: {json.dumps(obj, ensure_ascii=False)}\n\n").encode("utf-8")


SSE_DONE = b"data: [DONE]\n\n"


async def collect_completion(lines: AsyncIterable[str], model: str = MODEL_NAME) -> Dict[str, Any]:
    """Buffered mode: consume the whole stream, return one ``chat.completion``."""
    created = int(time.time())
    result = StreamResult()
    async for _ in iter_deltas(lines, result):
        pass
    if not result.finished:
        logger.warning("Upstream stream ended without a terminal event", conversation_id=result.conversation_id)
    return completion_object(result, model, created)


async def transcode_stream(
    lines: AsyncIterable[str],
    model: str = MODEL_NAME,
    on_complete: Optional[Callable[[StreamResult], None]] = None,
) -> AsyncIterator[bytes]:
    """
    Incremental mode: yield SSE-encoded ``chat.completion.chunk`` frames.

    Protocol or transport failures end the stream with ``[DONE]`` instead of
    raising into the HTTP response.
    """
    created = int(time.time())
    result = StreamResult()
    yield sse_data(chunk_object("", {"role": "assistant", "content": ""}, model=model, created=created))
    try:
        async for delta in iter_deltas(lines, result):
            yield sse_data(chunk_object(result.conversation_id, {"content": delta}, model=model, created=created))
    except (UpstreamProtocolError, TransportError) as exc:
        logger.error("Upstream stream aborted", error=exc.message, conversation_id=result.conversation_id)
        yield SSE_DONE
        return

    if not result.finished:
        logger.warning("Upstream stream ended without a terminal event", conversation_id=result.conversation_id)
        yield SSE_DONE
        return

    # Upstream is done; the client may disconnect before the last frames are written.
    if on_complete is not None:
        on_complete(result)
    yield sse_data(
        chunk_object(
            result.conversation_id,
            {"content": result.tail} if result.tail else {},
            model=model,
            created=created,
            finish_reason="stop",
            usage=True,
        )
    )
    yield SSE_DONE


def unavailable_stream(model: str = MODEL_NAME) -> AsyncIterator[bytes]:
    async def gen() -> AsyncIterator[bytes]:
        yield sse_data(
            chunk_object(
                "",
                {"role": "assistant", "content": UNAVAILABLE_TEXT},
                model=model,
                created=int(time.time()),
                finish_reason="stop",
                usage=True,
            )
        )
        yield SSE_DONE

    return gen()
