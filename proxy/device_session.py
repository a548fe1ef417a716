import asyncio
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, Optional

from logging_config import get_logger

logger = get_logger(__name__)

# Upstream device registrations are reused for three hours.
DEVICE_INFO_EXPIRES = 10800


@dataclass(frozen=True)
class DeviceIdentity:
    user_id: str
    device_id: Optional[str] = None
    refresh_time: int = 0

    def expired(self, now: float) -> bool:
        return now > self.refresh_time


RegisterFn = Callable[[str], Awaitable[DeviceIdentity]]


class DeviceSessionManager:
    """
    Per-credential cache of upstream device identities.

    Concurrent ``acquire`` calls for the same token while no valid entry exists
    share one registration future. The cache lives in this process only; two
    workers serving the same token will each register their own device.
    """

    def __init__(self, register: RegisterFn, *, clock: Callable[[], float] = time.time) -> None:
        self._register = register
        self._clock = clock
        self._cache: Dict[str, DeviceIdentity] = {}
        self._inflight: Dict[str, "asyncio.Future[DeviceIdentity]"] = {}

    async def acquire(self, token: str) -> DeviceIdentity:
        identity = self._cache.get(token)
        if identity is not None and not identity.expired(self._clock()):
            return identity

        fut = self._inflight.get(token)
        if fut is None:
            fut = asyncio.ensure_future(self._refresh(token))
            self._inflight[token] = fut

            def _done(f: "asyncio.Future[DeviceIdentity]", token: str = token) -> None:
                if self._inflight.get(token) is f:
                    del self._inflight[token]

            fut.add_done_callback(_done)
        # shield: one cancelled waiter must not cancel the registration for the others
        return await asyncio.shield(fut)

    async def _refresh(self, token: str) -> DeviceIdentity:
        logger.info("Registering upstream device", token=token)
        identity = await self._register(token)
        self._cache[token] = identity
        logger.info("Device identity refreshed", token=token, device_id=identity.device_id)
        return identity

    def evict(self, token: str) -> None:
        if self._cache.pop(token, None) is not None:
            logger.info("Device identity evicted", token=token)

    def cached(self, token: str) -> Optional[DeviceIdentity]:
        return self._cache.get(token)

    def clear(self) -> None:
        self._cache.clear()
