from __future__ import annotations

from typing import List, Optional, Tuple

import anyio
import pytest

from mcp_servers.speak.engine import PlaybackError


class FakeEngine:
    """Records calls; fails for voices listed in bad_voices."""

    def __init__(
        self,
        error: Optional[Exception] = None,
        stop_error: Optional[Exception] = None,
        bad_voices: Tuple[str, ...] = (),
    ) -> None:
        self.calls: List[Tuple[str, Optional[str], Optional[float]]] = []
        self.stops = 0
        self.error = error
        self.stop_error = stop_error
        self.bad_voices = bad_voices

    async def speak(self, text: str, voice: Optional[str] = None, speed: Optional[float] = None) -> None:
        self.calls.append((text, voice, speed))
        if voice in self.bad_voices:
            raise PlaybackError(f"voice {voice} not found")
        if self.error is not None:
            raise self.error

    def stop(self) -> None:
        self.stops += 1
        if self.stop_error is not None:
            raise self.stop_error


class BlockingEngine:
    """Speaks until stop() is called, then settles as interrupted."""

    def __init__(self) -> None:
        self.started = anyio.Event()
        self.stopped = anyio.Event()

    async def speak(self, text: str, voice: Optional[str] = None, speed: Optional[float] = None) -> None:
        self.started.set()
        await self.stopped.wait()
        raise PlaybackError("speech was interrupted")

    def stop(self) -> None:
        self.stopped.set()


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def fake_engine() -> FakeEngine:
    return FakeEngine()
