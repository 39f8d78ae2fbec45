from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Awaitable, Protocol, TypeVar


T = TypeVar("T")


class Clock(Protocol):
    def now_ms(self) -> int: ...

    async def run_with_timeout(self, awaitable: Awaitable[T], timeout_ms: int) -> T: ...


@dataclass(frozen=True, slots=True)
class RealClock(Clock):
    def now_ms(self) -> int:
        return int(time.monotonic() * 1000)

    async def run_with_timeout(self, awaitable: Awaitable[T], timeout_ms: int) -> T:
        if timeout_ms <= 0:
            return await awaitable
        return await asyncio.wait_for(awaitable, timeout=timeout_ms / 1000.0)


class FakeClock(Clock):
    """
    Deterministic clock for tests.

    - now_ms() only moves when advance() is called.
    - run_with_timeout() raises TimeoutError once advance() crosses the deadline.
    """

    def __init__(self, start_ms: int = 0) -> None:
        self._now_ms = int(start_ms)
        self._deadlines: list[tuple[int, asyncio.Future[None]]] = []

    def now_ms(self) -> int:
        return self._now_ms

    def advance(self, ms: int) -> None:
        if ms < 0:
            raise ValueError("FakeClock.advance(ms): ms must be >= 0")
        self._now_ms += int(ms)
        remaining: list[tuple[int, asyncio.Future[None]]] = []
        for wake_at, fut in self._deadlines:
            if fut.done():
                continue
            if wake_at <= self._now_ms:
                fut.set_result(None)
            else:
                remaining.append((wake_at, fut))
        self._deadlines = remaining

    async def run_with_timeout(self, awaitable: Awaitable[T], timeout_ms: int) -> T:
        if timeout_ms <= 0:
            return await awaitable

        loop = asyncio.get_running_loop()
        deadline: asyncio.Future[None] = loop.create_future()
        self._deadlines.append((self._now_ms + int(timeout_ms), deadline))

        main_task = asyncio.ensure_future(awaitable)
        try:
            done, _ = await asyncio.wait({main_task, deadline}, return_when=asyncio.FIRST_COMPLETED)
            if main_task not in done:
                main_task.cancel()
                await asyncio.gather(main_task, return_exceptions=True)
                raise TimeoutError(f"operation timed out after {timeout_ms}ms")
            return main_task.result()
        finally:
            if not deadline.done():
                deadline.cancel()
