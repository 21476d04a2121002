#!/usr/bin/env python3
"""
proxyd 入口

启动顺序：
    1. 运行环境检查（--report / --reset-password / root / 端口占用）
    2. TPROXY 可用性探测（lite 模式跳过）
    3. 清理上次异常退出遗留的透明代理规则
    4. 等待网络可用
    5. 打开数据库并执行配置迁移
    6. 核心配置文件检查
    7. 下载缺失的 geoip.dat / geosite.dat（找到核心程序时）
    8. 启动横幅
    9. 自动更新调度（后台）
    10. 管理服务与生命周期控制（前台，直到退出）

Usage:
    proxyd [--address 0.0.0.0:2017] [--config /etc/proxyd] [--lite] [--report]
"""

import asyncio
import logging
import os
import platform
import sys
from pathlib import Path
from typing import List, Optional

from api_server import create_app, serve
from db_helper import Store
from engine import ProxyEngine
from env_check import check_environment, parse_address
from env_config import EnvironmentConfig
from errors import ConfigurationInitError, EngineError, ProxydError
from geodata_assets import AssetProvisioner
from gfwlist import RuleListUpdater
from lifecycle import LifecycleController
from log_config import ALERT, fatal, get_log_level, setup_logging
from migration import MigrationPipeline
from network import wait_for_network
from scheduler import AutoUpdateScheduler, SchedulerState
from subscription import SubscriptionUpdater
from version_check import VERSION

logger = logging.getLogger("proxyd")


def hello(cfg: EnvironmentConfig, engine: ProxyEngine) -> None:
    logger.log(ALERT, f"V2RayLocationAsset is {cfg.asset_dir}")
    logger.log(ALERT, f"V2Ray binary is {engine.core_binary_path() or 'not found'}")
    logger.log(ALERT, f"proxyd working directory is {os.getcwd()}")
    logger.log(ALERT, f"proxyd configuration directory is {cfg.config}")
    logger.log(ALERT, f"Python: {platform.python_version()}")
    logger.log(ALERT, f"OS: {platform.system().lower()}")
    logger.log(ALERT, f"Arch: {platform.machine()}")
    logger.log(ALERT, f"Lite: {cfg.lite}")
    logger.log(ALERT, f"Version: {VERSION}")
    logger.log(ALERT, "Starting...")


def open_store(config_dir: Path) -> Store:
    try:
        store = Store.open(config_dir)
    except ProxydError as e:
        fatal(logger, f"failed to open store: {e}")
    try:
        state = MigrationPipeline(store, config_dir).run()
    except ConfigurationInitError as e:
        store.close()
        fatal(logger, str(e))
    logger.info(f"configuration state: {state.value}")
    return store


async def run_daemon(cfg: EnvironmentConfig) -> None:
    config_dir = Path(cfg.config)
    asset_dir = Path(cfg.asset_dir)
    engine = ProxyEngine(config_dir, asset_dir, core_bin=cfg.core_bin)

    if not cfg.lite:
        try:
            engine.probe_tproxy()
        except EngineError as e:
            logger.info(f"{e}")

    try:
        engine.stop_transparent_proxy()
    except EngineError as e:
        logger.warning(f"{e}")

    await wait_for_network()

    store = await asyncio.to_thread(open_store, config_dir)
    engine.store = store

    try:
        engine.ensure_core_config()
    except OSError as e:
        logger.warning(f"failed to write core config template: {e}")

    if engine.core_binary_path():
        await asyncio.to_thread(AssetProvisioner(asset_dir).provision)

    hello(cfg, engine)

    state = SchedulerState()
    subscription_updater = SubscriptionUpdater(store)
    scheduler = AutoUpdateScheduler(
        store,
        state,
        RuleListUpdater(asset_dir),
        subscription_updater,
    )
    try:
        setting = await asyncio.to_thread(store.get_setting)
    except ProxydError as e:
        store.close()
        fatal(logger, f"failed to read setting: {e}")
    scheduler.start(setting)

    app = create_app(store, state, scheduler, subscription_updater)
    host, port = parse_address(cfg.address)
    controller = LifecycleController(store, engine, lambda: serve(app, host, port))
    try:
        await controller.run()
    finally:
        await scheduler.stop()


def main(argv: Optional[List[str]] = None) -> None:
    cfg = EnvironmentConfig.from_args(argv)
    setup_logging(level=get_log_level(cfg.log_level))
    check_environment(cfg)
    asyncio.run(run_daemon(cfg))


if __name__ == "__main__":
    main(sys.argv[1:])
