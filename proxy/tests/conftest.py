import json
import sys
from pathlib import Path

import httpx
import pytest

sys.path.append(str(Path(__file__).resolve().parents[1]))

from upstream import UpstreamClient

BASE_URL = "https://hailuo.test"
FILE_HOST = "files.example.test"


def ok(data):
    return httpx.Response(200, json={"statusInfo": {"code": 0, "message": "success"}, "data": data})


def sse_body(events):
    return b"".join(f"data: {json.dumps(ev, ensure_ascii=False)}\n\n".encode("utf-8") for ev in events)


def text_event(text, conversation_id="conv-1", message_id="msg-1"):
    return {
        "conversation_id": conversation_id,
        "message_id": message_id,
        "status": "generating",
        "parts": [{"status": "init", "content": [{"type": "text", "status": "init", "text": text}]}],
    }


def finish_event(conversation_id="conv-1"):
    return {"conversation_id": conversation_id, "status": "finish"}


class TrackedStream(httpx.AsyncByteStream):
    def __init__(self, body, closed):
        self._body = body
        self._closed = closed

    async def __aiter__(self):
        yield self._body

    async def aclose(self):
        self._closed.append(True)


class FakeUpstream:
    """
    Stand-in for the upstream web API behind ``httpx.MockTransport``.

    ``chat`` holds one factory per expected chat turn; the last one is reused
    once the list runs out.
    """

    def __init__(self):
        self.requests = []
        self.chat = []
        self.closed = []
        self.files = {}
        self.file_status = 200
        self.live_tokens = {"tok"}
        self.registrations = 0
        self.uploaded = []

    def sse(self, events, status=200, content_type="text/event-stream"):
        return httpx.Response(
            status,
            headers={"content-type": content_type},
            stream=TrackedStream(sse_body(events) if isinstance(events, list) else events, self.closed),
        )

    def answer(self, *texts, conversation_id="conv-1"):
        events = [text_event(t, conversation_id=conversation_id) for t in texts]
        events.append(finish_event(conversation_id))
        self.chat.append(lambda: self.sse(events))

    def fail(self, status=502):
        self.chat.append(lambda: self.sse(b"<html>bad gateway</html>", status=status, content_type="text/html"))

    def paths(self, method=None):
        return [r.url.path for r in self.requests if method is None or r.method == method]

    def chat_requests(self):
        return [r for r in self.requests if r.url.path == "/v4/api/chat/msg"]

    def put_object(self, policy, key, data):
        self.uploaded.append((policy["bucketName"], key, data))

    def __call__(self, request):
        self.requests.append(request)
        path = request.url.path

        if request.url.host == FILE_HOST:
            if self.file_status >= 400:
                return httpx.Response(self.file_status)
            body = self.files.get(path, b"")
            if request.method == "HEAD":
                return httpx.Response(200, headers={"content-length": str(len(body))})
            return httpx.Response(200, content=body)

        if path == "/v1/api/user/device/register":
            self.registrations += 1
            return ok({"deviceIDStr": f"dev-{self.registrations}"})
        if path == "/v4/api/chat/msg":
            factory = self.chat.pop(0) if len(self.chat) > 1 else self.chat[0]
            return factory()
        if path.startswith("/v1/api/chat/history/"):
            return ok({})
        if path == "/v1/api/user/info":
            if request.headers.get("token") in self.live_tokens:
                return ok({"userInfo": {"nickName": "tester"}})
            return httpx.Response(200, json={"statusInfo": {"code": 1004, "message": "login expired"}})
        if path == "/v1/api/files/request_policy":
            return ok(
                {
                    "dir": "uploads/2024",
                    "endpoint": "oss-cn-test.aliyuncs.com",
                    "bucketName": "bucket",
                    "accessKeyId": "ak",
                    "accessKeySecret": "sk",
                    "securityToken": "st",
                }
            )
        if path == "/v1/api/files/policy_callback":
            return ok({"fileID": "file-1"})
        return httpx.Response(404)


@pytest.fixture()
def fake_upstream():
    return FakeUpstream()


@pytest.fixture()
def upstream_client(fake_upstream):
    return UpstreamClient(
        BASE_URL,
        transport=httpx.MockTransport(fake_upstream),
        put_object=fake_upstream.put_object,
    )
