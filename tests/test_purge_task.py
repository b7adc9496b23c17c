"""
tests/test_purge_task.py -- Tests for the background session purge loop in
api/main.py and the startup wiring it depends on.

Coverage:
  - the loop keeps running after an Unavailable and after an unexpected error
  - unexpected errors are logged with their traceback
  - build_container derives the dummy hash before the first request
"""

from __future__ import annotations

import asyncio
import logging
from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest

from api.main import _purge_loop
from core.errors import Unavailable


def test_purge_loop_survives_failures(caplog) -> None:
    calls: list[int] = []

    def purge() -> int:
        calls.append(1)
        if len(calls) == 1:
            raise RuntimeError("store exploded")
        if len(calls) == 2:
            raise Unavailable()
        return 0

    container = MagicMock()
    container.settings.session_purge_interval_seconds = 0
    container.sessions.purge_expired = purge
    app = SimpleNamespace(state=SimpleNamespace(container=container))

    async def run() -> None:
        task = asyncio.create_task(_purge_loop(app))

        async def until_third_call() -> None:
            while len(calls) < 3:
                await asyncio.sleep(0.01)

        await asyncio.wait_for(until_third_call(), timeout=5)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

    with caplog.at_level(logging.WARNING, logger="moodledger.api"):
        asyncio.run(run())

    assert len(calls) >= 3
    failed = [r for r in caplog.records if r.getMessage().startswith("Session purge failed")]
    assert failed and failed[0].exc_info is not None
    assert any("storage unavailable" in r.getMessage() for r in caplog.records)


def test_dummy_hash_derived_at_startup(container) -> None:
    # cached_property stores its value on the instance once computed.
    assert "dummy_hash" in vars(container.hasher)
