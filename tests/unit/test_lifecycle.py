#!/usr/bin/env python3
"""Unit tests for the lifecycle controller (serve vs. termination signal race, ordered shutdown)

Run: pytest tests/unit/test_lifecycle.py -v
"""

import asyncio
import logging
import signal
from unittest.mock import AsyncMock, MagicMock

import pytest

from errors import EngineError, ServeError
from lifecycle import TERMINATION_SIGNALS, ExitReason, LifecycleController


def _collaborators(running=False):
    calls = []
    store = MagicMock()
    store.get_running.return_value = running
    store.close.side_effect = lambda: calls.append("store.close")
    engine = MagicMock()
    engine.apply_config = AsyncMock()
    engine.stop_transparent_proxy.side_effect = lambda: calls.append("engine.stop_transparent_proxy")
    engine.stop = AsyncMock(side_effect=lambda: calls.append("engine.stop"))
    return store, engine, calls


async def _serve_forever():
    await asyncio.Event().wait()


class TestSignals:
    def test_termination_signals(self):
        assert set(TERMINATION_SIGNALS) == {
            signal.SIGINT, signal.SIGTERM, signal.SIGHUP, signal.SIGQUIT, signal.SIGILL,
        }

    def test_signal_first_shuts_down_once(self, caplog):
        store, engine, calls = _collaborators()
        controller = LifecycleController(store, engine, _serve_forever)

        async def scenario():
            asyncio.get_running_loop().call_later(0.05, controller.request_shutdown, signal.SIGTERM)
            reason = await controller.run()
            await controller.shutdown()
            return reason

        with caplog.at_level(logging.DEBUG):
            reason = asyncio.run(scenario())

        assert reason == ExitReason.SIGNAL
        assert calls == ["engine.stop_transparent_proxy", "engine.stop", "store.close"]
        assert not any(r.levelno == logging.CRITICAL for r in caplog.records)

    def test_real_signal_delivery(self):
        store, engine, calls = _collaborators()
        controller = LifecycleController(store, engine, _serve_forever, signals=[signal.SIGUSR1])

        async def scenario():
            loop = asyncio.get_running_loop()
            loop.call_later(0.05, signal.raise_signal, signal.SIGUSR1)
            return await controller.run()

        assert asyncio.run(scenario()) == ExitReason.SIGNAL
        assert controller.received_signal == signal.SIGUSR1
        assert calls[-1] == "store.close"


class TestServe:
    def test_serve_error_exits_after_shutdown(self, caplog):
        store, engine, calls = _collaborators()

        async def failing_serve():
            await asyncio.sleep(0.01)
            raise ServeError("address already in use")

        controller = LifecycleController(store, engine, failing_serve)
        with caplog.at_level(logging.DEBUG):
            with pytest.raises(SystemExit) as exc_info:
                asyncio.run(controller.run())

        assert exc_info.value.code == 1
        assert calls == ["engine.stop_transparent_proxy", "engine.stop", "store.close"]
        critical = [r for r in caplog.records if r.levelno == logging.CRITICAL]
        assert len(critical) == 1
        assert "address already in use" in critical[0].message

    def test_graceful_serve_return(self):
        store, engine, calls = _collaborators()
        controller = LifecycleController(store, engine, AsyncMock(return_value=None))

        assert asyncio.run(controller.run()) == ExitReason.SERVE_STOPPED
        assert calls == ["engine.stop_transparent_proxy", "engine.stop", "store.close"]


class TestStartup:
    def test_applies_config_when_running(self):
        store, engine, _ = _collaborators(running=True)
        controller = LifecycleController(store, engine, AsyncMock(return_value=None))
        asyncio.run(controller.run())
        engine.apply_config.assert_awaited_once()

    def test_skips_engine_when_not_running(self):
        store, engine, _ = _collaborators(running=False)
        controller = LifecycleController(store, engine, AsyncMock(return_value=None))
        asyncio.run(controller.run())
        engine.apply_config.assert_not_awaited()

    def test_engine_failure_does_not_abort_startup(self, caplog):
        store, engine, _ = _collaborators(running=True)
        engine.apply_config.side_effect = EngineError("v2ray core binary not found")
        serve = AsyncMock(return_value=None)
        controller = LifecycleController(store, engine, serve)

        with caplog.at_level(logging.ERROR):
            assert asyncio.run(controller.run()) == ExitReason.SERVE_STOPPED

        serve.assert_awaited_once()
        assert any("binary not found" in r.message for r in caplog.records if r.levelno == logging.ERROR)


class TestShutdown:
    def test_each_step_failure_swallowed(self, caplog):
        store, engine, calls = _collaborators()
        engine.stop_transparent_proxy.side_effect = EngineError("iptables missing")
        engine.stop.side_effect = RuntimeError("kill failed")

        with caplog.at_level(logging.ERROR):
            asyncio.run(LifecycleController(store, engine, _serve_forever).shutdown())

        assert calls == ["store.close"]
        errors = " ".join(r.message for r in caplog.records)
        assert "iptables missing" in errors
        assert "kill failed" in errors
