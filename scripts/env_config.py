#!/usr/bin/env python3
"""
运行环境配置

命令行参数优先，未指定时读取环境变量：
    PROXYD_ADDRESS: 管理服务监听地址 (default: 0.0.0.0:2017)
    PROXYD_CONFIG: 配置目录 (default: /etc/proxyd)
    PROXYD_ASSET_DIR: geoip.dat / geosite.dat 所在目录 (default: /usr/share/v2ray)
    PROXYD_CORE_BIN: v2ray / xray 可执行文件路径 (default: 在 PATH 中查找)
    PROXYD_LITE: 轻量模式，不需要 root，不使用透明代理 (default: false)
    PROXYD_PASS_CHECK_ROOT: 跳过 root 检查 (default: false)
    LOG_LEVEL: 日志级别
"""

import argparse
import os
from dataclasses import asdict, dataclass
from typing import List, Optional

import yaml

DEFAULT_ADDRESS = "0.0.0.0:2017"
DEFAULT_CONFIG_DIR = "/etc/proxyd"
DEFAULT_ASSET_DIR = "/usr/share/v2ray"


def _env_flag(name: str) -> bool:
    return os.environ.get(name, "false").lower() in ("1", "true", "yes", "on")


@dataclass
class EnvironmentConfig:
    address: str = DEFAULT_ADDRESS
    config: str = DEFAULT_CONFIG_DIR
    asset_dir: str = DEFAULT_ASSET_DIR
    core_bin: Optional[str] = None
    lite: bool = False
    pass_check_root: bool = False
    reset_password: bool = False
    print_report: bool = False
    log_level: Optional[str] = None

    def __post_init__(self):
        if self.lite:
            self.pass_check_root = True

    @classmethod
    def from_env(cls) -> "EnvironmentConfig":
        """Create config from environment variables"""
        return cls(
            address=os.environ.get("PROXYD_ADDRESS", DEFAULT_ADDRESS),
            config=os.environ.get("PROXYD_CONFIG", DEFAULT_CONFIG_DIR),
            asset_dir=os.environ.get("PROXYD_ASSET_DIR", DEFAULT_ASSET_DIR),
            core_bin=os.environ.get("PROXYD_CORE_BIN") or None,
            lite=_env_flag("PROXYD_LITE"),
            pass_check_root=_env_flag("PROXYD_PASS_CHECK_ROOT"),
            log_level=os.environ.get("LOG_LEVEL") or None,
        )

    @classmethod
    def from_args(cls, argv: Optional[List[str]] = None) -> "EnvironmentConfig":
        defaults = cls.from_env()
        parser = argparse.ArgumentParser(prog="proxyd", description="proxy management daemon")
        parser.add_argument("-a", "--address", default=defaults.address, help="listening address")
        parser.add_argument("-c", "--config", default=defaults.config, help="configuration directory")
        parser.add_argument("--asset-dir", default=defaults.asset_dir, help="directory of geoip.dat and geosite.dat")
        parser.add_argument("--core-bin", default=defaults.core_bin, help="path of the v2ray/xray binary")
        parser.add_argument("--lite", action="store_true", default=defaults.lite,
                            help="lite mode: no root required, transparent proxy disabled")
        parser.add_argument("--passcheckroot", dest="pass_check_root", action="store_true",
                            default=defaults.pass_check_root, help="skip the root privilege check")
        parser.add_argument("--reset-password", action="store_true", help="reset all accounts and exit")
        parser.add_argument("--report", dest="print_report", action="store_true",
                            help="print the effective configuration and exit")
        parser.add_argument("--log-level", default=defaults.log_level,
                            help="DEBUG, INFO, WARNING, ALERT, ERROR or CRITICAL")
        args = parser.parse_args(argv)
        return cls(**vars(args))

    def report(self) -> str:
        """有效配置的 YAML 文本"""
        return yaml.safe_dump(asdict(self), default_flow_style=False, sort_keys=False)
