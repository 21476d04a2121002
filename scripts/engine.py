#!/usr/bin/env python3
"""
代理核心（v2ray / xray）进程管理

- apply_config: 按数据库中的已连接服务器生成核心配置并（重新）启动进程
- stop: SIGTERM，超时后 SIGKILL
- stop_transparent_proxy: 清理 TPROXY 相关的 iptables / ip rule
- probe_tproxy: 加载 xt_TPROXY 内核模块，检测透明代理是否可用
- ensure_core_config: 核心配置文件不存在时写入模板
"""

import asyncio
import json
import logging
import os
import shutil
import signal
import subprocess
from pathlib import Path
from typing import Any, Dict, List, Optional

from configure import Ports, Setting, TransparentMode, Which
from db_helper import Store
from errors import EngineError, ProxydError

logger = logging.getLogger(__name__)

CORE_CONFIG_NAME = "config.json"
CORE_PID_NAME = "core.pid"
CORE_CANDIDATES = ("v2ray", "xray")

TPROXY_CHAIN = "PROXYD"
TPROXY_PORT = 32345
TPROXY_MARK = 0x40
TPROXY_TABLE = "100"
RESERVED_NETWORKS = (
    "0.0.0.0/8", "10.0.0.0/8", "100.64.0.0/10", "127.0.0.0/8",
    "169.254.0.0/16", "172.16.0.0/12", "192.168.0.0/16", "224.0.0.0/4", "240.0.0.0/4",
)

STOP_WAIT_ROUNDS = 10
STOP_WAIT_INTERVAL = 0.5


def core_config_template() -> Dict[str, Any]:
    """没有任何服务器时使用的最小配置：只有直连出站"""
    return {
        "log": {"loglevel": "warning"},
        "inbounds": [],
        "outbounds": [{"tag": "direct", "protocol": "freedom", "settings": {}}],
    }


def build_outbound(server, tag: str) -> Dict[str, Any]:
    """把 server object 转换为核心出站配置"""
    protocol = server.protocol
    if protocol == "vmess":
        settings = {"vnext": [{
            "address": server.server,
            "port": server.server_port,
            "users": [{"id": server.uuid, "alterId": server.alter_id, "security": server.security}],
        }]}
    elif protocol == "vless":
        user = {"id": server.uuid, "encryption": "none"}
        if server.flow:
            user["flow"] = server.flow
        settings = {"vnext": [{"address": server.server, "port": server.server_port, "users": [user]}]}
    elif protocol == "trojan":
        settings = {"servers": [{"address": server.server, "port": server.server_port, "password": server.password}]}
    elif protocol == "ss":
        protocol = "shadowsocks"
        settings = {"servers": [{
            "address": server.server,
            "port": server.server_port,
            "method": server.method,
            "password": server.password,
        }]}
    else:
        raise EngineError(f"cannot build outbound for protocol {protocol!r}")

    outbound = {"tag": tag, "protocol": protocol, "settings": settings}
    if protocol != "shadowsocks":
        outbound["streamSettings"] = _stream_settings(server)
    return outbound


def _stream_settings(server) -> Dict[str, Any]:
    transport_type = server.transport_type or "tcp"
    transport_config = server.transport_config or {}
    stream = {"network": transport_type}

    if transport_type == "ws":
        stream["wsSettings"] = {
            "path": transport_config.get("path", "/"),
            "headers": transport_config.get("headers", {}),
        }
    elif transport_type == "grpc":
        stream["grpcSettings"] = {"serviceName": transport_config.get("service_name", "")}
    elif transport_type in ("h2", "http"):
        stream["network"] = "h2"
        stream["httpSettings"] = {
            "path": transport_config.get("path", "/"),
            "host": transport_config.get("host", []),
        }

    if getattr(server, "reality_enabled", False):
        stream["security"] = "reality"
        stream["realitySettings"] = {
            "serverName": server.tls_sni or server.server,
            "fingerprint": server.tls_fingerprint or "chrome",
            "publicKey": server.reality_public_key or "",
            "shortId": server.reality_short_id or "",
        }
    elif server.tls_enabled:
        tls = {"serverName": server.tls_sni or server.server}
        if server.tls_fingerprint:
            tls["fingerprint"] = server.tls_fingerprint
        if server.tls_alpn:
            tls["alpn"] = server.tls_alpn
        if server.tls_allow_insecure:
            tls["allowInsecure"] = True
        stream["security"] = "tls"
        stream["tlsSettings"] = tls
    return stream


def _inbounds(ports: Ports, setting: Setting) -> List[Dict[str, Any]]:
    inbounds = []
    if ports.socks5:
        inbounds.append({
            "tag": "socks", "port": ports.socks5, "listen": "0.0.0.0",
            "protocol": "socks", "settings": {"udp": True},
        })
    if ports.http:
        inbounds.append({"tag": "http", "port": ports.http, "listen": "0.0.0.0", "protocol": "http"})
    if setting.transparent != TransparentMode.CLOSE:
        inbounds.append({
            "tag": "transparent", "port": TPROXY_PORT, "protocol": "dokodemo-door",
            "settings": {"network": "tcp,udp", "followRedirect": True},
            "streamSettings": {"sockopt": {"tproxy": "tproxy"}},
        })
    return inbounds


class ProxyEngine:
    def __init__(
        self,
        config_dir: Path,
        asset_dir: Path,
        core_bin: Optional[str] = None,
        store: Optional[Store] = None,
    ):
        self.store = store
        self.config_dir = Path(config_dir)
        self.asset_dir = Path(asset_dir)
        self.core_bin = core_bin
        self.pid: Optional[int] = None
        self._tproxy_active = False

    @property
    def core_config_path(self) -> Path:
        return self.config_dir / CORE_CONFIG_NAME

    @property
    def pid_path(self) -> Path:
        return self.config_dir / CORE_PID_NAME

    def core_binary_path(self) -> Optional[str]:
        """优先使用显式指定的路径，否则在 PATH 中查找 v2ray / xray"""
        if self.core_bin:
            return self.core_bin if Path(self.core_bin).exists() else None
        for name in CORE_CANDIDATES:
            found = shutil.which(name)
            if found:
                return found
        return None

    # ============ 配置 ============

    def ensure_core_config(self) -> bool:
        """配置文件缺失时写入模板，返回是否写入"""
        if self.core_config_path.exists():
            return False
        self.config_dir.mkdir(parents=True, exist_ok=True)
        self.core_config_path.write_text(json.dumps(core_config_template(), indent=2))
        logger.info(f"core config template written: {self.core_config_path}")
        return True

    def _connected_servers(self) -> List[Any]:
        servers = self.store.get_servers_v2()
        subscriptions = self.store.get_subscriptions_v2()
        result = []
        for which in self.store.get_connected_servers():
            result.append(self._locate(which, servers, subscriptions))
        return [s for s in result if s is not None]

    @staticmethod
    def _locate(which: Which, servers, subscriptions):
        index = which.id - 1
        if which.type == "subscriptionServer":
            if not 0 <= which.sub < len(subscriptions):
                return None
            servers = subscriptions[which.sub].servers
        if not 0 <= index < len(servers):
            logger.warning(f"connected server not found: {which.type} {which.id}")
            return None
        return servers[index].server_obj

    def generate_config(self) -> Dict[str, Any]:
        setting = self.store.get_setting()
        config = core_config_template()
        config["inbounds"] = _inbounds(self.store.get_ports(), setting)
        proxies = [
            build_outbound(server, "proxy" if i == 0 else f"proxy{i}")
            for i, server in enumerate(self._connected_servers())
        ]
        config["outbounds"] = proxies + config["outbounds"]
        return config

    # ============ 进程管理 ============

    def _is_process_alive(self) -> bool:
        pid = self.pid or self._read_pid_from_file()
        if not pid:
            return False
        try:
            os.kill(pid, 0)
            return True
        except ProcessLookupError:
            return False
        except PermissionError:
            return True

    def _read_pid_from_file(self) -> Optional[int]:
        try:
            return int(self.pid_path.read_text().strip())
        except (OSError, ValueError):
            return None

    async def apply_config(self) -> None:
        """生成配置并重启核心

        Raises:
            EngineError: 找不到核心程序、配置写入失败或进程启动后立即退出
        """
        if self.store is None:
            raise EngineError("store is not attached")
        binary = self.core_binary_path()
        if not binary:
            raise EngineError("v2ray core binary not found")

        try:
            config = await asyncio.to_thread(self.generate_config)
        except ProxydError as e:
            raise EngineError(f"failed to generate core config: {e}") from e

        if self._is_process_alive():
            await self.stop()

        try:
            self.config_dir.mkdir(parents=True, exist_ok=True)
            self.core_config_path.write_text(json.dumps(config, indent=2))
        except OSError as e:
            raise EngineError(f"failed to write core config: {e}") from e

        env = dict(os.environ)
        env["V2RAY_LOCATION_ASSET"] = str(self.asset_dir)
        env["XRAY_LOCATION_ASSET"] = str(self.asset_dir)
        try:
            proc = subprocess.Popen(
                [binary, "run", "-c", str(self.core_config_path)],
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                env=env,
            )
        except OSError as e:
            raise EngineError(f"failed to start {binary}: {e}") from e
        self.pid = proc.pid

        await asyncio.sleep(1)
        if proc.poll() is not None:
            self.pid = None
            raise EngineError(f"{binary} exited immediately with code {proc.returncode}")
        self.pid_path.write_text(str(proc.pid))
        logger.info(f"v2ray core started (PID: {proc.pid})")

        if self.store.get_setting().transparent != TransparentMode.CLOSE:
            await asyncio.to_thread(self.start_transparent_proxy)

    async def stop(self) -> None:
        pid = self.pid or self._read_pid_from_file()
        if pid:
            try:
                os.kill(pid, signal.SIGTERM)
                logger.debug(f"SIGTERM sent to core (PID: {pid})")
                for _ in range(STOP_WAIT_ROUNDS):
                    try:
                        os.kill(pid, 0)
                        await asyncio.sleep(STOP_WAIT_INTERVAL)
                    except ProcessLookupError:
                        break
                else:
                    try:
                        os.kill(pid, signal.SIGKILL)
                    except ProcessLookupError:
                        pass
            except ProcessLookupError:
                pass
            logger.info("v2ray core stopped")
        self.pid = None
        self.pid_path.unlink(missing_ok=True)

    # ============ 透明代理 ============

    @staticmethod
    def _run(cmd: List[str], check: bool = True) -> subprocess.CompletedProcess:
        logger.debug(f"Running: {' '.join(cmd)}")
        return subprocess.run(cmd, capture_output=True, text=True, check=check)

    def _iptables(self, args: List[str], check: bool = True) -> subprocess.CompletedProcess:
        iptables_cmd = os.environ.get("IPTABLES_BACKEND", "iptables")
        return self._run([iptables_cmd, "-t", "mangle"] + args, check=check)

    def start_transparent_proxy(self) -> None:
        mark = f"0x{TPROXY_MARK:x}/0x{TPROXY_MARK:x}"
        try:
            self._iptables(["-N", TPROXY_CHAIN], check=False)
            self._iptables(["-F", TPROXY_CHAIN])
            for network in RESERVED_NETWORKS:
                self._iptables(["-A", TPROXY_CHAIN, "-d", network, "-j", "RETURN"])
            for proto in ("tcp", "udp"):
                self._iptables([
                    "-A", TPROXY_CHAIN, "-p", proto, "-j", "TPROXY",
                    "--on-ip", "127.0.0.1", "--on-port", str(TPROXY_PORT), "--tproxy-mark", mark,
                ])
            self._iptables(["-I", "PREROUTING", "-j", TPROXY_CHAIN])
            self._run(["ip", "rule", "add", "fwmark", mark, "table", TPROXY_TABLE])
            self._run(["ip", "route", "add", "local", "0.0.0.0/0", "dev", "lo", "table", TPROXY_TABLE])
        except (OSError, subprocess.CalledProcessError) as e:
            self.stop_transparent_proxy()
            raise EngineError(f"failed to set up transparent proxy: {e}") from e
        self._tproxy_active = True
        logger.info("transparent proxy enabled")

    def stop_transparent_proxy(self) -> None:
        """删除 TPROXY 规则，规则不存在时静默跳过"""
        mark = f"0x{TPROXY_MARK:x}/0x{TPROXY_MARK:x}"
        try:
            self._iptables(["-D", "PREROUTING", "-j", TPROXY_CHAIN], check=False)
            self._iptables(["-F", TPROXY_CHAIN], check=False)
            self._iptables(["-X", TPROXY_CHAIN], check=False)
            self._run(["ip", "rule", "del", "fwmark", mark, "table", TPROXY_TABLE], check=False)
            self._run(["ip", "route", "del", "local", "0.0.0.0/0", "dev", "lo", "table", TPROXY_TABLE], check=False)
        except OSError as e:
            raise EngineError(f"failed to clean up transparent proxy: {e}") from e
        if self._tproxy_active:
            logger.info("transparent proxy disabled")
        self._tproxy_active = False

    def probe_tproxy(self) -> None:
        """加载 xt_TPROXY 模块

        Raises:
            EngineError: 模块不可用
        """
        try:
            self._run(["modprobe", "xt_TPROXY"])
        except (OSError, subprocess.CalledProcessError) as e:
            raise EngineError(f"TPROXY is not available: {e}") from e
