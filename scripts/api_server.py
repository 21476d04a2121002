#!/usr/bin/env python3
"""FastAPI 服务：proxyd 管理接口

- GET  /api/version                       当前版本与远端版本
- GET  /api/setting                       读取设置
- PUT  /api/setting                       保存设置，并立即按新设置调整自动更新定时器
- POST /api/subscriptions/{index}/update  手动刷新订阅
"""
import asyncio
import contextlib
import logging
from typing import Any, Dict

import uvicorn
from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware

from configure import Setting
from db_helper import Store
from errors import ProxydError, ServeError, SubscriptionUpdateError
from scheduler import AutoUpdateScheduler, SchedulerState
from subscription import SubscriptionUpdater
from version_check import VERSION

logger = logging.getLogger(__name__)


def create_app(
    store: Store,
    state: SchedulerState,
    scheduler: AutoUpdateScheduler,
    subscription_updater: SubscriptionUpdater,
) -> FastAPI:
    app = FastAPI(title="proxyd", version=VERSION)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/api/version")
    def api_version() -> Dict[str, Any]:
        return {
            "version": VERSION,
            "foundNew": state.found_new,
            "remoteVersion": state.remote_version,
        }

    @app.get("/api/setting")
    def api_get_setting() -> Dict[str, Any]:
        try:
            setting = store.get_setting()
        except ProxydError as e:
            raise HTTPException(status_code=500, detail=f"读取设置失败: {e}")
        return setting.model_dump(mode="json", by_alias=True)

    @app.put("/api/setting")
    async def api_put_setting(setting: Setting) -> Dict[str, Any]:
        try:
            await asyncio.to_thread(store.set_setting, setting)
        except ProxydError as e:
            raise HTTPException(status_code=500, detail=f"保存设置失败: {e}")
        scheduler.configure(setting)
        return setting.model_dump(mode="json", by_alias=True)

    @app.post("/api/subscriptions/{index}/update")
    async def api_update_subscription(index: int) -> Dict[str, Any]:
        try:
            sub = await asyncio.to_thread(subscription_updater.update, index)
        except SubscriptionUpdateError as e:
            raise HTTPException(status_code=400, detail=str(e))
        except ProxydError as e:
            raise HTTPException(status_code=500, detail=str(e))
        return sub.model_dump(mode="json", by_alias=True)

    return app


class _Server(uvicorn.Server):
    """信号由 LifecycleController 统一处理，uvicorn 不再安装自己的处理函数"""

    def install_signal_handlers(self) -> None:
        pass

    @contextlib.contextmanager
    def capture_signals(self):
        yield


async def serve(app: FastAPI, host: str, port: int) -> None:
    """运行管理服务直到被取消

    Raises:
        ServeError: 端口绑定失败等导致服务无法启动或异常退出
    """
    config = uvicorn.Config(app, host=host, port=port, log_config=None, access_log=False)
    server = _Server(config)
    logger.info(f"management service listening on {host}:{port}")
    try:
        await server.serve()
    except SystemExit as e:
        # uvicorn 启动失败时调用 sys.exit
        raise ServeError(f"management service failed on {host}:{port}") from e
    except OSError as e:
        raise ServeError(f"management service failed on {host}:{port}: {e}") from e
    if not server.started:
        raise ServeError(f"management service failed to start on {host}:{port}")
