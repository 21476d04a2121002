#!/usr/bin/env python3
"""
进程生命周期

启动代理核心（如果上次退出时处于运行状态），然后让管理服务与终止信号赛跑：
任一先发生即进入关闭流程。关闭流程只执行一次，依次清理透明代理、停止核心、关闭数据库，
每一步失败都只记录日志。管理服务异常退出时，关闭完成后以状态码 1 退出。
"""

import asyncio
import logging
import signal
from enum import Enum
from typing import Awaitable, Callable, Iterable, List, Optional

from db_helper import Store
from engine import ProxyEngine
from log_config import fatal

logger = logging.getLogger(__name__)

# SIGKILL 无法被捕获
TERMINATION_SIGNALS = (
    signal.SIGINT,
    signal.SIGTERM,
    signal.SIGHUP,
    signal.SIGQUIT,
    signal.SIGILL,
)


class ExitReason(Enum):
    SIGNAL = "signal"
    SERVE_STOPPED = "serve_stopped"


class LifecycleController:
    def __init__(
        self,
        store: Store,
        engine: ProxyEngine,
        serve: Callable[[], Awaitable[None]],
        signals: Iterable[signal.Signals] = TERMINATION_SIGNALS,
    ):
        self.store = store
        self.engine = engine
        self.serve = serve
        self.signals = list(signals)
        self.received_signal: Optional[signal.Signals] = None
        self._stop_event = asyncio.Event()
        self._shut_down = False

    def request_shutdown(self, sig: signal.Signals) -> None:
        if self.received_signal is None:
            self.received_signal = sig
        self._stop_event.set()

    async def _start_engine(self) -> None:
        try:
            running = await asyncio.to_thread(self.store.get_running)
            if running:
                await self.engine.apply_config()
        except Exception as e:
            logger.error(f"failed to start v2ray core: {e}")

    def _install_signal_handlers(self, loop: asyncio.AbstractEventLoop) -> List[signal.Signals]:
        installed = []
        for sig in self.signals:
            try:
                loop.add_signal_handler(sig, self.request_shutdown, sig)
                installed.append(sig)
            except (ValueError, RuntimeError) as e:
                logger.warning(f"cannot handle signal {sig}: {e}")
        return installed

    async def run(self) -> ExitReason:
        """运行至管理服务退出或收到终止信号

        Raises:
            SystemExit: 管理服务异常退出（关闭流程已完成）
        """
        loop = asyncio.get_running_loop()
        await self._start_engine()

        installed = self._install_signal_handlers(loop)
        serve_task = asyncio.create_task(self.serve(), name="serve")
        signal_task = asyncio.create_task(self._stop_event.wait(), name="signal")
        try:
            done, pending = await asyncio.wait({serve_task, signal_task}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for sig in installed:
                loop.remove_signal_handler(sig)

        serve_error: Optional[BaseException] = None
        if serve_task in done:
            reason = ExitReason.SERVE_STOPPED
            if not serve_task.cancelled():
                serve_error = serve_task.exception()
        else:
            reason = ExitReason.SIGNAL
            name = self.received_signal.name if self.received_signal else "signal"
            logger.info(f"received {name}, shutting down")

        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)

        await self.shutdown()
        if serve_error is not None:
            fatal(logger, f"management service exited: {serve_error}")
        return reason

    async def shutdown(self) -> None:
        if self._shut_down:
            return
        self._shut_down = True

        try:
            await asyncio.to_thread(self.engine.stop_transparent_proxy)
        except Exception as e:
            logger.error(f"failed to stop transparent proxy: {e}")
        try:
            await self.engine.stop()
        except Exception as e:
            logger.error(f"failed to stop v2ray core: {e}")
        try:
            self.store.close()
        except Exception as e:
            logger.error(f"failed to close store: {e}")
        logger.info("shutdown complete")
