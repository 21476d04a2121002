#!/usr/bin/env python3
"""启动前的运行环境检查：--report、root 权限、--reset-password、端口占用"""

import errno
import logging
import os
import socket
from pathlib import Path
from typing import Optional, Tuple

from db_helper import Store
from env_config import EnvironmentConfig
from errors import EnvironmentCheckError, ProxydError
from log_config import fatal

logger = logging.getLogger(__name__)


def parse_address(address: str) -> Tuple[str, int]:
    """解析 host:port，host 可省略，IPv6 需加方括号

    Raises:
        EnvironmentCheckError: 端口缺失或不在 1-65535 范围内
    """
    host, sep, port_str = address.rpartition(":")
    if not sep:
        raise EnvironmentCheckError(f"address has no port: {address!r}")
    try:
        port = int(port_str)
    except ValueError:
        raise EnvironmentCheckError(f"invalid port in address {address!r}") from None
    if not 0 < port < 65536:
        raise EnvironmentCheckError(f"port out of range in address {address!r}")
    return host.strip("[]") or "0.0.0.0", port


def is_port_occupied(host: str, port: int) -> bool:
    family = socket.AF_INET6 if ":" in host else socket.AF_INET
    with socket.socket(family, socket.SOCK_STREAM) as sock:
        try:
            sock.bind((host, port))
        except OSError as e:
            if e.errno == errno.EADDRINUSE:
                return True
            raise
    return False


def check_environment(cfg: EnvironmentConfig, euid: Optional[int] = None) -> None:
    """依次执行各项检查

    --report / --reset-password 完成后以状态码 0 退出；检查不通过时记录 CRITICAL 并以状态码 1 退出。
    """
    if cfg.print_report:
        print(cfg.report())
        raise SystemExit(0)

    if euid is None:
        euid = os.geteuid()
    if (not cfg.pass_check_root or cfg.reset_password) and euid != 0:
        fatal(logger, "Please execute this program with sudo or as a root user for the best experience.\n"
                      "If you are sure you are not running as root, use --lite or --passcheckroot to skip this check.")

    if cfg.reset_password:
        try:
            store = Store.open(Path(cfg.config))
            try:
                store.reset_accounts()
            finally:
                store.close()
        except ProxydError as e:
            fatal(logger, f"failed to reset accounts: {e}")
        print("It will work after you restart proxyd")
        raise SystemExit(0)

    try:
        host, port = parse_address(cfg.address)
    except EnvironmentCheckError as e:
        fatal(logger, str(e))

    try:
        occupied = is_port_occupied(host, port)
    except OSError as e:
        fatal(logger, f"failed to check port {port}: {e}")
    if occupied:
        fatal(logger, f"Port {port} is occupied")
