#!/usr/bin/env python3
"""
统一日志配置模块

通过环境变量控制全局日志级别：
- LOG_LEVEL: Python 日志级别 (DEBUG, INFO, WARNING, ALERT, ERROR, CRITICAL)
- DEBUG: 设置为 "1"/"true" 时等价于 LOG_LEVEL=DEBUG

除标准级别外额外注册 ALERT 级别（介于 WARNING 与 ERROR 之间），
用于启动横幅、网络等待等需要始终可见但并非错误的提示。

使用方式：
    from log_config import ALERT, setup_logging, fatal

    setup_logging()
    logger = logging.getLogger(__name__)
    logger.log(ALERT, "network is connected")
    fatal(logger, "cannot continue")   # 记录 CRITICAL 并以状态码 1 退出
"""

import logging
import os
import sys
from typing import NoReturn, Optional

# 默认日志级别
DEFAULT_LOG_LEVEL = "INFO"

# ALERT 级别
ALERT = 35
logging.addLevelName(ALERT, "ALERT")

# 日志格式
LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# 全局配置标志，防止重复配置
_logging_configured = False


def get_log_level(level_str: Optional[str] = None) -> int:
    """从参数或环境变量获取日志级别

    优先级：
    1. level_str 参数（命令行 --log-level）
    2. LOG_LEVEL 环境变量
    3. DEBUG 环境变量为 "1"/"true"/"yes"/"on" 时使用 DEBUG

    Returns:
        logging 模块的日志级别常量
    """
    if level_str is None:
        level_str = os.environ.get("LOG_LEVEL", "")
    level_str = level_str.upper().strip()

    if not level_str:
        debug_flag = os.environ.get("DEBUG", "").lower().strip()
        if debug_flag in ("1", "true", "yes", "on"):
            level_str = "DEBUG"
        else:
            level_str = DEFAULT_LOG_LEVEL

    level_map = {
        "DEBUG": logging.DEBUG,
        "INFO": logging.INFO,
        "WARNING": logging.WARNING,
        "WARN": logging.WARNING,
        "ALERT": ALERT,
        "ERROR": logging.ERROR,
        "CRITICAL": logging.CRITICAL,
        "FATAL": logging.CRITICAL,
    }

    return level_map.get(level_str, logging.INFO)


def setup_logging(level: Optional[int] = None) -> None:
    """配置全局日志，只生效一次

    Args:
        level: 日志级别，None 表示从环境变量获取
    """
    global _logging_configured

    if _logging_configured:
        return

    if level is None:
        level = get_log_level()

    logging.basicConfig(
        level=level,
        format=LOG_FORMAT,
        datefmt=DATE_FORMAT,
        stream=sys.stderr,
        force=True
    )

    # 设置第三方库的日志级别（减少噪音）
    for lib_logger in ["urllib3", "requests", "uvicorn.access"]:
        logging.getLogger(lib_logger).setLevel(max(level, logging.WARNING))

    _logging_configured = True
    logging.getLogger(__name__).debug(f"Logging configured: level={logging.getLevelName(level)}")


def fatal(logger: logging.Logger, msg: str) -> NoReturn:
    """记录 CRITICAL 日志并终止进程（退出码 1）"""
    logger.critical(msg)
    raise SystemExit(1)
