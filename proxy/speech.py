import asyncio
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence

from completions import CompletionService, ConversationHandle
from errors import (
    APIError,
    SynthesisDownloadError,
    SynthesisEmptyError,
    SynthesisTimeoutError,
    UpstreamProtocolError,
)
from logging_config import get_logger
from upstream import UpstreamClient

logger = get_logger(__name__)

ROBOT_ID = "1"
OPENAI_VOICES = ("alloy", "echo", "fable", "onyx", "nova", "shimmer")
DEFAULT_PERSONAS = (
    "male-botong",
    "Podcast_girl",
    "boyan_new_hailuo",
    "female-shaonv",
    "YaeMiko_hailuo",
    "xiaoyi_mix_hailuo",
)
# requestStatus values below this mean the upstream is still synthesising
SYNTHESIS_DONE_STATUS = 2


def parse_voice_overrides(raw: Optional[str]) -> List[str]:
    if not raw:
        return []
    return [v.strip() for v in raw.split(",")][: len(OPENAI_VOICES)]


def resolve_voice(voice: Optional[str], overrides: Sequence[str] = ()) -> str:
    """
    Map an OpenAI voice name to an upstream persona id.

    Standard names map by position to ``overrides`` and fall back to the default
    persona at that position. Any other non-empty name is taken as a persona id.
    """
    voice = (voice or "").strip()
    if voice in OPENAI_VOICES:
        idx = OPENAI_VOICES.index(voice)
        if idx < len(overrides) and overrides[idx]:
            return overrides[idx]
        return DEFAULT_PERSONAS[idx]
    return voice or DEFAULT_PERSONAS[0]


class SpeechService:
    """Text-to-speech through the upstream's message read-aloud feature."""

    def __init__(
        self,
        upstream: UpstreamClient,
        completions: CompletionService,
        *,
        voice_overrides: Sequence[str] = (),
        poll_interval: float = 1.0,
        timeout: float = 30.0,
    ) -> None:
        self.upstream = upstream
        self.completions = completions
        self.voice_overrides = list(voice_overrides)
        self.poll_interval = poll_interval
        self.timeout = timeout
        self._locks: Dict[str, asyncio.Lock] = {}
        self._lock_users: Dict[str, int] = {}

    @asynccontextmanager
    async def voice_slot(self, token: str) -> AsyncIterator[None]:
        # The upstream keeps one persona per account, so one synthesis per token at a time.
        lock = self._locks.get(token)
        if lock is None:
            lock = self._locks[token] = asyncio.Lock()
        self._lock_users[token] = self._lock_users.get(token, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[token] -= 1
            if not self._lock_users[token]:
                del self._lock_users[token]
                del self._locks[token]

    async def _switch_persona(self, persona: str, token: str) -> None:
        await self.upstream.request_data(
            "POST",
            "/v1/api/chat/update_robot_custom_config",
            {"robotID": ROBOT_ID, "config": {"robotVoiceID": persona}},
            token,
        )

    async def _poll_audio_urls(self, handle: ConversationHandle, persona: str, token: str) -> List[str]:
        while True:
            data = await self.upstream.request_data(
                "GET",
                f"/v1/api/chat/msg_tts?msgID={handle.message_id}&timbre={persona}",
                {},
                token,
            )
            if not isinstance(data, dict):
                raise UpstreamProtocolError("unexpected synthesis status payload")
            try:
                status = int(data.get("requestStatus") or 0)
            except (TypeError, ValueError) as exc:
                raise UpstreamProtocolError(f"invalid synthesis status: {data.get('requestStatus')!r}") from exc
            if status >= SYNTHESIS_DONE_STATUS:
                urls = data.get("result") or []
                return [str(u) for u in urls if u]
            await asyncio.sleep(self.poll_interval)

    async def _synthesize(self, handle: ConversationHandle, persona: str, token: str) -> List[str]:
        async with self.voice_slot(token):
            await self._switch_persona(persona, token)
            try:
                return await asyncio.wait_for(self._poll_audio_urls(handle, persona, token), self.timeout)
            except asyncio.TimeoutError as exc:
                raise SynthesisTimeoutError(f"speech synthesis timed out after {self.timeout}s") from exc

    async def _fetch_segments(self, urls: List[str]) -> bytes:
        responses = await asyncio.gather(*(self.upstream.download(url) for url in urls))
        audio = bytearray()
        for resp in responses:
            if resp.status_code != 200:
                raise SynthesisDownloadError(f"audio download failed: [{resp.status_code}] {resp.reason_phrase}")
            audio.extend(resp.content)
        return bytes(audio)

    async def create_speech(self, model: str, text: str, voice: Optional[str], token: str) -> bytes:
        persona = resolve_voice(voice, self.voice_overrides)
        logger.info("Speech requested", model=model, voice=voice, persona=persona, chars=len(text))

        handle = await self.completions.create_repeat_completion(model, text.replace("\n", "。"), token)
        try:
            urls = await self._synthesize(handle, persona, token)
        finally:
            try:
                await self.completions.remove_conversation(handle.id, token)
            except APIError as exc:
                logger.warning("Conversation cleanup failed", conversation_id=handle.id, error=exc.message)

        if not urls:
            raise SynthesisEmptyError("no audio was generated")
        return await self._fetch_segments(urls)


def describe(overrides: Sequence[str]) -> Dict[str, Any]:
    return {voice: resolve_voice(voice, overrides) for voice in OPENAI_VOICES}
