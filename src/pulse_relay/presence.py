"""
Typing tracker: ephemeral "is typing" state per conversation.

Entries expire `window` seconds after the last `typing` envelope; a
background loop sweeps them every `sweep_interval` seconds and emits the
implicit `stop_typing` a silent client never sent. State lives only in
memory and is mutated under a single asyncio lock; fan-out happens after
the lock is released.
"""

import asyncio
import logging
import time
from typing import Awaitable, Callable, Optional

from pulse_relay.models.envelope import Envelope, EnvelopeType
from pulse_relay.transport.envelope import build_envelope

logger = logging.getLogger(__name__)

DEFAULT_TYPING_WINDOW_S = 3.0
DEFAULT_SWEEP_INTERVAL_S = 1.0

FanOut = Callable[..., Awaitable[int]]


class TypingTracker:
    def __init__(
        self,
        fan_out: FanOut,
        window: float = DEFAULT_TYPING_WINDOW_S,
        sweep_interval: float = DEFAULT_SWEEP_INTERVAL_S,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._fan_out = fan_out
        self._window = window
        self._sweep_interval = sweep_interval
        self._clock = clock
        # conversation id -> principal id -> expiry (clock seconds)
        self._entries: dict[str, dict[str, float]] = {}
        self._lock = asyncio.Lock()
        self._sweeper: Optional[asyncio.Task[None]] = None

    @property
    def window(self) -> float:
        return self._window

    async def mark_typing(self, conversation_id: str, principal_id: str) -> None:
        async with self._lock:
            self._entries.setdefault(conversation_id, {})[principal_id] = self._clock() + self._window
        await self._emit(EnvelopeType.TYPING, conversation_id, principal_id)

    async def mark_stopped(self, conversation_id: str, principal_id: str) -> None:
        async with self._lock:
            self._discard(conversation_id, principal_id)
        await self._emit(EnvelopeType.STOP_TYPING, conversation_id, principal_id)

    async def sweep_expired(self) -> list[tuple[str, str]]:
        """Drop expired entries and fan out one stop_typing for each."""
        now = self._clock()
        expired: list[tuple[str, str]] = []
        async with self._lock:
            for conversation_id, bucket in self._entries.items():
                expired.extend((conversation_id, pid) for pid, expiry in bucket.items() if expiry <= now)
            for conversation_id, principal_id in expired:
                self._discard(conversation_id, principal_id)
        await asyncio.gather(*(self._emit(EnvelopeType.STOP_TYPING, cid, pid) for cid, pid in expired))
        return expired

    async def forget_principal(self, principal_id: str) -> list[str]:
        """Clear a principal that went offline from every conversation."""
        async with self._lock:
            conversations = [cid for cid, bucket in self._entries.items() if principal_id in bucket]
            for conversation_id in conversations:
                self._discard(conversation_id, principal_id)
        await asyncio.gather(*(self._emit(EnvelopeType.STOP_TYPING, cid, principal_id) for cid in conversations))
        return conversations

    def typing_in(self, conversation_id: str) -> set[str]:
        return set(self._entries.get(conversation_id, ()))

    def start(self) -> None:
        if self._sweeper is None or self._sweeper.done():
            self._sweeper = asyncio.get_running_loop().create_task(self._sweep_loop())

    async def stop(self) -> None:
        if self._sweeper is None:
            return
        self._sweeper.cancel()
        try:
            await self._sweeper
        except asyncio.CancelledError:
            pass
        self._sweeper = None

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self._sweep_interval)
            try:
                await self.sweep_expired()
            except Exception:
                logger.exception("Typing sweep failed")

    def _discard(self, conversation_id: str, principal_id: str) -> None:
        bucket = self._entries.get(conversation_id)
        if bucket is None:
            return
        bucket.pop(principal_id, None)
        if not bucket:
            del self._entries[conversation_id]

    async def _emit(self, envelope_type: EnvelopeType, conversation_id: str, principal_id: str) -> None:
        envelope: Envelope = build_envelope(envelope_type, conversation_id, user_id=principal_id)
        await self._fan_out(envelope, origin=principal_id)
