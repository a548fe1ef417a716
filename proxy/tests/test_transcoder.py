import asyncio
import json
import sys
from pathlib import Path

import pytest

sys.path.append(str(Path(__file__).resolve().parents[1]))

import transcoder
from errors import UpstreamProtocolError
from transcoder import TranscoderState


def _text_event(text, status="init", conversation_id="conv-1", message_id="msg-1"):
    return {
        "conversation_id": conversation_id,
        "message_id": message_id,
        "status": "generating",
        "parts": [{"status": status, "content": [{"type": "text", "status": status, "text": text}]}],
    }


def _finish(conversation_id="conv-1", **extra):
    return dict({"conversation_id": conversation_id, "status": "finish"}, **extra)


async def _lines(events):
    for ev in events:
        data = ev if isinstance(ev, str) else json.dumps(ev, ensure_ascii=False)
        yield f"data: {data}"
        yield ""


def _frames(raw):
    out = []
    for block in raw.split(b"\n\n"):
        if not block:
            continue
        assert block.startswith(b"data: ")
        payload = block[len(b"data: "):]
        out.append(payload.decode("utf-8") if payload == b"[DONE]" else json.loads(payload))
    return out


def _run_stream(events, on_complete=None):
    async def run():
        raw = b""
        async for frame in transcoder.transcode_stream(_lines(events), "hailuo", on_complete):
            raw += frame
        return raw

    return _frames(asyncio.run(run()))


def _deltas(events):
    async def run():
        result = transcoder.StreamResult()
        return [d async for d in transcoder.iter_deltas(_lines(events), result)], result

    return asyncio.run(run())


def test_cumulative_text_yields_suffixes():
    deltas, result = _deltas([_text_event("Hel"), _text_event("Hello"), _finish()])
    assert deltas == ["Hel", "lo"]
    assert result.content == "Hello"
    assert result.finished
    assert result.conversation_id == "conv-1"
    assert result.message_id == "msg-1"


def test_step_does_not_mutate_input_state():
    state = TranscoderState()
    new_state, delta = transcoder.step(state, _text_event("abc"))
    assert delta == "abc"
    assert state.content == ""
    assert new_state.content == "abc"


def test_shrinking_snapshot_yields_nothing():
    deltas, result = _deltas([_text_event("Hello"), _text_event("Hel"), _finish()])
    assert deltas == ["Hello"]
    assert result.content == "Hello"


def test_invalid_char_is_held_back_until_resolved():
    deltas, result = _deltas([_text_event("He\ufffd"), _text_event("Hello"), _finish()])
    assert deltas == ["He", "llo"]
    assert "\ufffd" not in result.content
    assert result.content == "Hello"


def _code_event(code, status):
    return {
        "conversation_id": "conv-1",
        "status": "generating",
        "parts": [{"status": "init", "content": [{"type": "code", "status": status, "code": code}]}],
    }


def test_code_block_is_fenced_exactly_once():
    events = [
        _code_event("print(1", "init"),
        _code_event("print(1)", "init"),
        _code_event("print(1)", "finish"),
        {
            "conversation_id": "conv-1",
            "status": "generating",
            "parts": [
                {
                    "status": "init",
                    "content": [
                        {"type": "code", "status": "finish", "code": "print(1)"},
                        {"type": "text", "status": "init", "text": "Done"},
                    ],
                }
            ],
        },
        _finish(),
    ]
    deltas, result = _deltas(events)
    assert result.content == "```python\nprint(1)\n```\nDone"
    assert result.content.count("```python") == 1
    assert "".join(deltas) == result.content


def _items_event(*items):
    return {
        "conversation_id": "conv-1",
        "status": "generating",
        "parts": [{"status": "init", "content": list(items)}],
    }


def test_finished_text_chunk_yields_only_suffix():
    deltas, result = _deltas([_text_event("Hel"), _text_event("Hello", status="finish"), _finish()])
    assert deltas == ["Hel", "lo"]
    assert result.content == "Hello"


def _paragraph_events():
    return [
        _text_event("Hel"),
        _text_event("Hello", status="finish"),
        _code_event("x", "init"),
        _code_event("xy", "init"),
        _code_event("xy", "finish"),
        _text_event("World"),
        _finish(),
    ]


def test_new_item_after_finished_text_starts_paragraph():
    deltas, result = _deltas(_paragraph_events())
    assert result.content == "Hello\n```python\nxy\n```\nWorld"
    assert "".join(deltas) == result.content
    assert deltas[-1] == "World"


def test_paragraphs_agree_between_stream_and_buffered_modes():
    frames = _run_stream(_paragraph_events())
    streamed = "".join(f["choices"][0]["delta"].get("content", "") for f in frames if isinstance(f, dict))

    answer = asyncio.run(transcoder.collect_completion(_lines(_paragraph_events()), "hailuo"))
    assert answer["choices"][0]["message"]["content"] == streamed == "Hello\n```python\nxy\n```\nWorld"


def test_held_back_text_defers_later_items():
    events = [
        _items_event(
            {"type": "text", "status": "init", "text": "A\ufffd"},
            {"type": "code", "status": "init", "code": "x"},
        ),
        _items_event(
            {"type": "text", "status": "init", "text": "AB"},
            {"type": "code", "status": "init", "code": "xy"},
        ),
        _finish(),
    ]
    deltas, result = _deltas(events)
    assert deltas == ["A", "B```python\nxy"]
    assert result.content == "AB```python\nxy"
    assert result.content.count("```python") == 1


def test_held_back_step_keeps_decoration_counters():
    event = _items_event(
        {"type": "text", "status": "init", "text": "A\ufffd"},
        {"type": "code", "status": "init", "code": "x"},
    )
    state, delta = transcoder.step(TranscoderState(), event)
    assert delta == "A"
    assert state.content == "A"
    assert state.text_offset == 0
    assert not state.code_generating
    assert state.code_temp == ""


def test_execution_output_emitted_once():
    def ev():
        return {
            "conversation_id": "conv-1",
            "status": "generating",
            "parts": [{"status": "init", "content": [{"type": "execution_output", "status": "done", "content": "42"}]}],
        }

    deltas, result = _deltas([ev(), ev(), _finish()])
    assert result.content == "42\n"


def test_search_citations_precede_answer():
    quote_part = {
        "status": "finish",
        "meta_data": {"metadata_list": [{"title": "Doc", "url": "http://example.test/doc"}]},
        "content": [{"type": "quote_result", "status": "finish"}],
    }
    events = [
        {
            "conversation_id": "conv-1",
            "status": "generating",
            "parts": [quote_part, {"status": "init", "content": [{"type": "text", "status": "init", "text": "Answer"}]}],
        },
        {
            "conversation_id": "conv-1",
            "status": "generating",
            "parts": [{"status": "init", "content": [{"type": "text", "status": "init", "text": "Answer more"}]}],
        },
        _finish(),
    ]
    deltas, result = _deltas(events)
    assert result.content == "检索 Doc(http://example.test/doc) ...\n\nAnswer more"
    assert deltas[-1] == " more"


def test_generated_images_become_markdown():
    event = {
        "conversation_id": "conv-1",
        "status": "generating",
        "parts": [
            {
                "status": "finish",
                "content": [
                    {
                        "type": "image",
                        "image": [{"image_url": "https://img.example.test/1.png"}, {"image_url": "ftp://nope"}],
                    }
                ],
            }
        ],
    }
    _, result = _deltas([event, _finish()])
    assert result.content == "![图像](https://img.example.test/1.png)\n"


def test_intervene_text_is_appended_at_end():
    deltas, result = _deltas(
        [_text_event("Hi"), {"conversation_id": "conv-1", "status": "intervene", "last_error": {"intervene_text": "blocked"}}]
    )
    assert deltas == ["Hi"]
    assert result.tail == "\n\nblocked"
    assert result.content == "Hi\n\nblocked"


def test_stream_frames_and_completion_callback():
    seen = []
    frames = _run_stream([_text_event("Hel"), _text_event("Hello"), _finish()], on_complete=seen.append)

    assert frames[0]["choices"][0]["delta"] == {"role": "assistant", "content": ""}
    assert frames[0]["object"] == "chat.completion.chunk"
    assert [f["choices"][0]["delta"]["content"] for f in frames[1:3]] == ["Hel", "lo"]
    assert frames[1]["id"] == "conv-1"
    stop = frames[3]
    assert stop["choices"][0]["finish_reason"] == "stop"
    assert stop["choices"][0]["delta"] == {}
    assert stop["usage"] == {"prompt_tokens": 1, "completion_tokens": 1, "total_tokens": 2}
    assert frames[-1] == "[DONE]"
    assert [r.conversation_id for r in seen] == ["conv-1"]
    assert len({f["created"] for f in frames[:-1]}) == 1


def test_stream_and_buffered_modes_agree():
    events = [
        _text_event("Hel"),
        _text_event("Hello wor\ufffd"),
        _text_event("Hello world"),
        {"conversation_id": "conv-1", "status": "intervene", "last_error": {"intervene_text": "stop"}},
    ]
    frames = _run_stream(events)
    streamed = "".join(f["choices"][0]["delta"].get("content", "") for f in frames if isinstance(f, dict))

    answer = asyncio.run(transcoder.collect_completion(_lines(events), "hailuo"))
    assert answer["object"] == "chat.completion"
    assert answer["id"] == "conv-1"
    assert answer["choices"][0]["message"]["content"] == streamed == "Hello world\n\nstop"
    assert answer["choices"][0]["finish_reason"] == "stop"


def test_malformed_event_ends_stream_with_done():
    seen = []
    frames = _run_stream([_text_event("Hi"), "{not json"], on_complete=seen.append)
    assert frames[-1] == "[DONE]"
    assert frames[1]["choices"][0]["delta"]["content"] == "Hi"
    assert all(f == "[DONE]" or f["choices"][0]["finish_reason"] is None for f in frames)
    assert seen == []


def test_malformed_event_raises_in_buffered_mode():
    with pytest.raises(UpstreamProtocolError):
        asyncio.run(transcoder.collect_completion(_lines([_text_event("Hi"), "[1, 2"]), "hailuo"))


def test_stream_without_terminal_event_still_ends():
    seen = []
    frames = _run_stream([_text_event("Hi")], on_complete=seen.append)
    assert frames[-1] == "[DONE]"
    assert seen == []


def test_sse_parser_joins_multiline_data_and_skips_comments():
    async def lines():
        for line in [": keepalive", "event: message", "data: {\"a\":", "data: 1}", "", "data: x"]:
            yield line

    async def run():
        return [d async for d in transcoder.iter_sse_data(lines())]

    assert asyncio.run(run()) == ['{"a":\n1}', "x"]


def test_unavailable_stream_carries_apology():
    async def run():
        raw = b""
        async for frame in transcoder.unavailable_stream("hailuo"):
            raw += frame
        return raw

    frames = _frames(asyncio.run(run()))
    assert frames[0]["choices"][0]["delta"]["content"] == transcoder.UNAVAILABLE_TEXT
    assert frames[0]["choices"][0]["finish_reason"] == "stop"
    assert frames[-1] == "[DONE]"
