#!/usr/bin/env python3
"""配置数据模型

- Configure: 旧版单体配置（legacy JSON 与数据库初始值共用同一结构）
- ServerRaw / SubscriptionRaw: schema v1，服务器固定为 VmessInfo 结构
- ServerRawV2 / SubscriptionRawV2: schema v2，服务器为按协议区分的 server object
- Setting: 自动更新模式等全局设置

所有模型使用 pydantic 宽松模式校验，旧 JSON 中 "port": "443" 这类字符串数字可以直接解析。
JSON 字段名沿用旧版 camelCase（by_alias 序列化）。
"""

import base64
import json
from enum import Enum
from typing import Dict, List, Union
from urllib.parse import quote

from pydantic import AliasChoices, BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from server_obj import ServerObj


class _Model(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        coerce_numbers_to_str=True,
    )

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True)


class AutoUpdateMode(str, Enum):
    """自动更新模式"""
    DISABLED = "none"
    ON_EVERY_START = "auto_update"
    AT_FIXED_INTERVALS = "auto_update_at_intervals"


class RulePortMode(str, Enum):
    WHITELIST = "whitelist"
    GFWLIST = "gfwlist"
    CUSTOM = "custom"
    ROUTINGA = "routingA"


class TransparentMode(str, Enum):
    CLOSE = "close"
    PROXY = "proxy"
    WHITELIST = "whitelist"
    GFWLIST = "gfwlist"
    PAC = "pac"


class Setting(_Model):
    """全局设置

    旧版 JSON 中规则列表（GFWList）相关字段名为 pac*，这里通过 alias 兼容。
    """
    rule_port_mode: RulePortMode = Field(RulePortMode.WHITELIST, alias="pacMode")
    gfwlist_auto_update_mode: AutoUpdateMode = Field(
        AutoUpdateMode.DISABLED,
        alias="pacAutoUpdateMode",
    )
    gfwlist_auto_update_interval_hour: int = Field(0, alias="pacAutoUpdateIntervalHour")
    subscription_auto_update_mode: AutoUpdateMode = AutoUpdateMode.DISABLED
    subscription_auto_update_interval_hour: int = 0
    transparent: TransparentMode = TransparentMode.CLOSE
    tcp_fast_open: str = "default"
    mux_on: str = "no"
    mux: int = 8
    ip_forward: bool = Field(False, alias="ipforward")
    port_sharing: bool = False


class Ports(_Model):
    """本地入站端口，0 表示关闭"""
    socks5: int = 20170
    http: int = 20171
    http_with_pac: int = 20172
    vmess: int = 0


class VmessInfo(_Model):
    """schema v1 的服务器结构（不区分协议的固定字段集合）"""
    ps: str = ""
    add: str = ""
    port: str = ""
    id: str = ""
    aid: str = ""
    net: str = ""
    type: str = ""
    host: str = ""
    path: str = ""
    tls: str = ""
    flow: str = ""
    alpn: str = ""
    allow_insecure: bool = False
    v: str = ""
    protocol: str = ""

    def export_to_url(self) -> str:
        """按 protocol 导出分享链接

        ss 协议沿用旧版约定：id 保存密码，net 保存加密方式。
        """
        protocol = self.protocol or "vmess"
        fragment = f"#{quote(self.ps)}" if self.ps else ""

        if protocol == "vmess":
            obj = {
                "v": self.v or "2",
                "ps": self.ps,
                "add": self.add,
                "port": self.port,
                "id": self.id,
                "aid": self.aid or "0",
                "net": self.net,
                "type": self.type,
                "host": self.host,
                "path": self.path,
                "tls": self.tls,
                "alpn": self.alpn,
            }
            payload = json.dumps(obj, separators=(",", ":"), ensure_ascii=False)
            return "vmess://" + base64.b64encode(payload.encode()).decode()

        if protocol == "ss":
            userinfo = base64.urlsafe_b64encode(f"{self.net}:{self.id}".encode()).decode().rstrip("=")
            return f"ss://{userinfo}@{self.add}:{self.port}{fragment}"

        params = []
        if protocol == "vless":
            params.append(f"security={self.tls or 'none'}")
            if self.net and self.net != "tcp":
                params.append(f"type={self.net}")
            if self.path:
                params.append(f"path={quote(self.path)}")
            if self.flow:
                params.append(f"flow={self.flow}")
        if self.host:
            params.append(f"sni={self.host}")
        if self.alpn:
            params.append(f"alpn={self.alpn}")
        if self.allow_insecure:
            params.append("allowInsecure=1")
        query = f"?{'&'.join(params)}" if params else ""
        return f"{protocol}://{quote(self.id, safe='')}@{self.add}:{self.port}{query}{fragment}"


class ServerRaw(_Model):
    vmess_info: VmessInfo
    latency: str = ""


class SubscriptionRaw(_Model):
    remarks: str = ""
    address: str = ""
    status: str = ""
    servers: List[ServerRaw] = Field(default_factory=list)
    info: str = ""


class ServerRawV2(_Model):
    server_obj: ServerObj
    latency: str = ""


class SubscriptionRawV2(_Model):
    remarks: str = ""
    address: str = ""
    status: str = ""
    servers: List[ServerRawV2] = Field(default_factory=list)
    info: str = ""


class Which(_Model):
    """已连接服务器的定位：_type 为 server 或 subscriptionServer，id 从 1 开始"""
    type: str = Field("server", validation_alias=AliasChoices("_type", "type"), serialization_alias="_type")
    id: int = 0
    sub: int = 0


class Configure(_Model):
    """旧版单体配置"""
    servers: List[ServerRaw] = Field(default_factory=list)
    subscriptions: List[SubscriptionRaw] = Field(default_factory=list)
    connected_servers: List[Which] = Field(default_factory=list)
    setting: Setting = Field(default_factory=Setting)
    accounts: Dict[str, str] = Field(default_factory=dict)
    ports: Ports = Field(default_factory=Ports)

    @classmethod
    def new(cls) -> "Configure":
        """数据库初始值：空服务器列表 + 默认设置"""
        return cls()

    @classmethod
    def from_json(cls, data: Union[str, bytes]) -> "Configure":
        return cls.model_validate_json(data)

