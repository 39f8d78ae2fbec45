from __future__ import annotations

import asyncio
import logging
from pathlib import Path

import pytest

from advisor.clock import FakeClock, RealClock
from advisor.config import AdvisorConfig
from advisor.logs import configure_logging


def test_fake_clock_only_moves_on_advance() -> None:
    clock = FakeClock(100)
    assert clock.now_ms() == 100
    clock.advance(50)
    assert clock.now_ms() == 150
    with pytest.raises(ValueError):
        clock.advance(-1)


def test_fake_clock_timeout_fires_on_advance() -> None:
    clock = FakeClock()

    async def _run() -> None:
        started = asyncio.Event()

        async def slow() -> str:
            started.set()
            await asyncio.sleep(30)
            return "late"

        task = asyncio.create_task(clock.run_with_timeout(slow(), 1000))
        await started.wait()
        clock.advance(999)
        await asyncio.sleep(0)
        assert not task.done()
        clock.advance(1)
        with pytest.raises(TimeoutError):
            await task

    asyncio.run(_run())


def test_fake_clock_returns_result_before_deadline() -> None:
    async def quick() -> int:
        return 7

    assert asyncio.run(FakeClock().run_with_timeout(quick(), 1000)) == 7


def test_real_clock_times_out() -> None:
    async def slow() -> None:
        await asyncio.sleep(5)

    with pytest.raises(TimeoutError):
        asyncio.run(RealClock().run_with_timeout(slow(), 20))


def test_configure_logging_is_idempotent(tmp_path: Path) -> None:
    cfg = AdvisorConfig(log_dir=str(tmp_path / "logs"), log_level="DEBUG")
    root = logging.getLogger()
    before = list(root.handlers)
    level = root.level
    try:
        configure_logging(cfg)
        configure_logging(cfg)
        ours = [h for h in root.handlers if getattr(h, "_advisor_handler", False)]
        assert len(ours) == 2
        assert root.level == logging.DEBUG
        logging.getLogger("advisor.test").info("hello log file")
        for h in ours:
            h.flush()
        assert "hello log file" in (tmp_path / "logs" / "app.log").read_text(encoding="utf-8")
    finally:
        for h in list(root.handlers):
            if h not in before:
                root.removeHandler(h)
                h.close()
        root.setLevel(level)
