from __future__ import annotations

import asyncio

import pytest

from skugate.apps.api import main


class RecordingListener:
    def __init__(self) -> None:
        self.started = asyncio.Event()
        self.cancelled = False

    async def listen(self) -> None:
        self.started.set()
        try:
            await asyncio.Event().wait()
        except asyncio.CancelledError:
            self.cancelled = True
            raise


@pytest.mark.asyncio
async def test_lifespan_runs_cache_listener_until_shutdown(monkeypatch: pytest.MonkeyPatch) -> None:
    listener = RecordingListener()
    origins: list[str] = []

    def _build(origin: str) -> RecordingListener:
        origins.append(origin)
        return listener

    monkeypatch.setattr(main, "build_cache_listener", _build)
    app = main.create_app()

    async with app.router.lifespan_context(app):
        await asyncio.wait_for(listener.started.wait(), timeout=1)
        assert listener.cancelled is False

    assert listener.cancelled is True
    assert origins == [main.get_notifier().origin]
