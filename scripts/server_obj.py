#!/usr/bin/env python3
"""Server objects - typed proxy servers built from vmess://, vless://, trojan://, ss:// share links

Each supported protocol is a member of ServerProtocol with one registered
parse function. ``new_from_link(protocol, link)`` is the only constructor the
rest of the daemon uses; the objects serialise as a pydantic discriminated
union on their ``protocol`` field so they round-trip through the store.
"""

import base64
import json
from enum import Enum
from typing import Annotated, Any, Callable, Dict, List, Literal, Optional, Union
from urllib.parse import parse_qs, quote, unquote, urlparse

from pydantic import BaseModel, Field, TypeAdapter

from errors import InvalidLinkError, UnsupportedProtocolError


class ServerProtocol(str, Enum):
    """Protocols a server object can be built for"""
    VMESS = "vmess"
    VLESS = "vless"
    TROJAN = "trojan"
    SHADOWSOCKS = "ss"

    @property
    def scheme(self) -> str:
        return f"{self.value}://"


class _ServerBase(BaseModel):
    description: str = ""
    server: str
    server_port: int = Field(443, ge=1, le=65535)
    transport_type: str = "tcp"
    transport_config: Optional[Dict[str, Any]] = None
    tls_enabled: bool = False
    tls_sni: Optional[str] = None
    tls_alpn: Optional[List[str]] = None
    tls_fingerprint: Optional[str] = None
    tls_allow_insecure: bool = False

    @property
    def name(self) -> str:
        return self.description

    def export_to_url(self) -> str:
        raise NotImplementedError


class VmessServer(_ServerBase):
    protocol: Literal["vmess"] = "vmess"
    uuid: str
    alter_id: int = 0
    security: str = "auto"

    def export_to_url(self) -> str:
        """vmess://base64(json)"""
        vmess_obj = {
            "v": "2",
            "ps": self.description,
            "add": self.server,
            "port": str(self.server_port),
            "id": self.uuid,
            "aid": str(self.alter_id),
            "scy": self.security,
            "net": self.transport_type,
            "type": "none",
            "host": "",
            "path": "",
            "tls": "tls" if self.tls_enabled else "",
            "sni": self.tls_sni or "",
            "alpn": ",".join(self.tls_alpn) if self.tls_alpn else "",
            "fp": self.tls_fingerprint or "",
        }

        transport_config = self.transport_config or {}
        if self.transport_type == "ws":
            vmess_obj["path"] = transport_config.get("path", "/")
            vmess_obj["host"] = transport_config.get("headers", {}).get("Host", "")
        elif self.transport_type == "grpc":
            vmess_obj["path"] = transport_config.get("service_name", "")
            vmess_obj["host"] = transport_config.get("authority", "")
        elif self.transport_type in ("h2", "http"):
            vmess_obj["path"] = transport_config.get("path", "")
            host = transport_config.get("host") or [""]
            vmess_obj["host"] = host[0]

        json_str = json.dumps(vmess_obj, separators=(",", ":"), ensure_ascii=False)
        b64_str = base64.urlsafe_b64encode(json_str.encode()).decode().rstrip("=")
        return f"vmess://{b64_str}"


class VlessServer(_ServerBase):
    protocol: Literal["vless"] = "vless"
    uuid: str
    flow: Optional[str] = None
    reality_enabled: bool = False
    reality_public_key: Optional[str] = None
    reality_short_id: Optional[str] = None

    def export_to_url(self) -> str:
        params = []
        if self.reality_enabled:
            params.append("security=reality")
            if self.reality_public_key:
                params.append(f"pbk={self.reality_public_key}")
            if self.reality_short_id:
                params.append(f"sid={self.reality_short_id}")
        elif self.tls_enabled:
            params.append("security=tls")
        else:
            params.append("security=none")
        params.extend(_transport_params(self.transport_type, self.transport_config))
        params.extend(_tls_params(self))
        if self.flow:
            params.append(f"flow={self.flow}")

        fragment = f"#{quote(self.description)}" if self.description else ""
        return f"vless://{self.uuid}@{self.server}:{self.server_port}?{'&'.join(params)}{fragment}"


class TrojanServer(_ServerBase):
    protocol: Literal["trojan"] = "trojan"
    password: str
    tls_enabled: bool = True

    def export_to_url(self) -> str:
        params = _transport_params(self.transport_type, self.transport_config) + _tls_params(self)
        if self.tls_allow_insecure:
            params.append("allowInsecure=1")
        query_str = f"?{'&'.join(params)}" if params else ""
        fragment = f"#{quote(self.description)}" if self.description else ""
        return f"trojan://{quote(self.password, safe='')}@{self.server}:{self.server_port}{query_str}{fragment}"


class ShadowsocksServer(_ServerBase):
    protocol: Literal["ss"] = "ss"
    method: str
    password: str
    plugin: Optional[str] = None

    def export_to_url(self) -> str:
        """SIP002: ss://base64url(method:password)@server:port[/?plugin=...]#remark"""
        userinfo = base64.urlsafe_b64encode(f"{self.method}:{self.password}".encode()).decode().rstrip("=")
        plugin = f"/?plugin={quote(self.plugin, safe='')}" if self.plugin else ""
        fragment = f"#{quote(self.description)}" if self.description else ""
        return f"ss://{userinfo}@{self.server}:{self.server_port}{plugin}{fragment}"


ServerObj = Annotated[
    Union[VmessServer, VlessServer, TrojanServer, ShadowsocksServer],
    Field(discriminator="protocol"),
]
server_obj_adapter: TypeAdapter = TypeAdapter(ServerObj)


# ============ Parser registry ============

_PARSERS: Dict[ServerProtocol, Callable[[str], _ServerBase]] = {}


def register(protocol: ServerProtocol):
    """Register the parse function for one protocol"""
    def decorator(func: Callable[[str], _ServerBase]) -> Callable[[str], _ServerBase]:
        _PARSERS[protocol] = func
        return func
    return decorator


def supported_protocols() -> List[str]:
    return [p.value for p in _PARSERS]


def new_from_link(protocol: str, link: str) -> _ServerBase:
    """Build a server object of kind ``protocol`` from its share link

    Raises:
        UnsupportedProtocolError: protocol is not a registered kind
        InvalidLinkError: the link is malformed for that protocol
    """
    try:
        kind = ServerProtocol(protocol)
    except ValueError:
        raise UnsupportedProtocolError(protocol) from None
    parser = _PARSERS.get(kind)
    if parser is None:
        raise UnsupportedProtocolError(protocol)

    link = link.strip()
    if not link.startswith(kind.scheme):
        raise InvalidLinkError(f"{kind.value} link must start with {kind.scheme}")
    try:
        return parser(link)
    except InvalidLinkError:
        raise
    except (ValueError, TypeError, AttributeError) as e:
        # pydantic.ValidationError is a ValueError too; TypeError/AttributeError come from mistyped JSON fields
        raise InvalidLinkError(f"invalid {kind.value} link: {e}") from e


def from_link(link: str) -> _ServerBase:
    """Detect the protocol from the link scheme and build the server object"""
    link = link.strip()
    scheme, sep, _ = link.partition("://")
    if not sep:
        raise InvalidLinkError("share link has no scheme")
    return new_from_link(scheme.lower(), link)


@register(ServerProtocol.VMESS)
def parse_vmess_link(link: str) -> VmessServer:
    """Parse vmess://base64(json)"""
    try:
        data = json.loads(_b64decode(link[len("vmess://"):]))
    except (ValueError, UnicodeDecodeError) as e:
        raise InvalidLinkError(f"failed to decode vmess payload: {e}") from e
    if not isinstance(data, dict):
        raise InvalidLinkError("vmess payload is not a JSON object")
    if not data.get("add"):
        raise InvalidLinkError("vmess link missing server address")
    if not data.get("id"):
        raise InvalidLinkError("vmess link missing UUID")

    net = str(data.get("net") or "tcp")
    alpn = data.get("alpn") or []
    if isinstance(alpn, str):
        alpn = alpn.split(",")
    return VmessServer(
        description=data.get("ps", ""),
        server=data["add"],
        server_port=int(data.get("port") or 443),
        uuid=data["id"],
        alter_id=int(data.get("aid") or 0),
        security=data.get("scy") or "auto",
        tls_enabled=data.get("tls", "") in ("tls", "xtls"),
        tls_sni=data.get("sni") or data.get("host") or data["add"],
        tls_alpn=[a.strip() for a in alpn if a.strip()] or None,
        tls_fingerprint=data.get("fp") or None,
        transport_type=_normalize_transport_type(net),
        transport_config=_transport_config_from_vmess(net, data),
    )


@register(ServerProtocol.VLESS)
def parse_vless_link(link: str) -> VlessServer:
    """Parse vless://uuid@server:port?params#remark"""
    parsed = urlparse(link)
    params = parse_qs(parsed.query)
    if not parsed.username:
        raise InvalidLinkError("vless link missing UUID")
    if not parsed.hostname:
        raise InvalidLinkError("vless link missing server")

    security = _get_param(params, "security", "none")
    reality = security == "reality"
    transport_type = _get_param(params, "type", "tcp")
    return VlessServer(
        description=unquote(parsed.fragment),
        server=parsed.hostname,
        server_port=parsed.port or 443,
        uuid=parsed.username,
        flow=_get_param(params, "flow"),
        reality_enabled=reality,
        reality_public_key=_get_param(params, "pbk") if reality else None,
        reality_short_id=_get_param(params, "sid") if reality else None,
        **_common_tls_kwargs(params, parsed.hostname, tls_enabled=security in ("tls", "xtls")),
        transport_type=_normalize_transport_type(transport_type),
        transport_config=_transport_config_from_params(transport_type, params),
    )


@register(ServerProtocol.TROJAN)
def parse_trojan_link(link: str) -> TrojanServer:
    """Parse trojan://password@server:port?params#remark"""
    parsed = urlparse(link)
    params = parse_qs(parsed.query)
    password = unquote(parsed.username) if parsed.username else ""
    if not password:
        raise InvalidLinkError("trojan link missing password")
    if not parsed.hostname:
        raise InvalidLinkError("trojan link missing server")

    transport_type = _get_param(params, "type", "tcp")
    tls_kwargs = _common_tls_kwargs(params, parsed.hostname, tls_enabled=True)
    tls_kwargs["tls_sni"] = _get_param(params, "sni") or _get_param(params, "peer") or parsed.hostname
    return TrojanServer(
        description=unquote(parsed.fragment),
        server=parsed.hostname,
        server_port=parsed.port or 443,
        password=password,
        **tls_kwargs,
        transport_type=_normalize_transport_type(transport_type),
        transport_config=_transport_config_from_params(transport_type, params),
    )


@register(ServerProtocol.SHADOWSOCKS)
def parse_shadowsocks_link(link: str) -> ShadowsocksServer:
    """Parse SIP002 ss://userinfo@server:port#remark and legacy ss://base64(method:password@server:port)#remark"""
    body, _, fragment = link[len("ss://"):].partition("#")
    remark = unquote(fragment)

    if "@" not in body:
        try:
            body = _b64decode(body.split("/?", 1)[0])
        except (ValueError, UnicodeDecodeError) as e:
            raise InvalidLinkError(f"failed to decode ss payload: {e}") from e
        userinfo, _, hostport = body.rpartition("@")
        plugin = None
    else:
        parsed = urlparse("ss://" + body)
        hostport = f"{parsed.hostname}:{parsed.port}" if parsed.hostname and parsed.port else ""
        raw_user = unquote(parsed.username or "")
        if parsed.password is not None:
            userinfo = f"{raw_user}:{unquote(parsed.password)}"
        else:
            try:
                userinfo = _b64decode(raw_user)
            except (ValueError, UnicodeDecodeError) as e:
                raise InvalidLinkError(f"failed to decode ss userinfo: {e}") from e
        plugin = _get_param(parse_qs(parsed.query), "plugin")

    method, sep, password = userinfo.partition(":")
    host, _, port = hostport.rpartition(":")
    if not sep or not method or not password:
        raise InvalidLinkError("ss link missing method or password")
    if not host or not port.isdigit():
        raise InvalidLinkError("ss link missing server address")

    return ShadowsocksServer(
        description=remark,
        server=host.strip("[]"),
        server_port=int(port),
        method=method,
        password=password,
        plugin=plugin,
    )


# ============ Helper Functions ============


def _b64decode(data: str) -> str:
    data = data.strip().replace("-", "+").replace("_", "/")
    padding = 4 - len(data) % 4
    if padding != 4:
        data += "=" * padding
    return base64.b64decode(data, validate=True).decode("utf-8")


def _get_param(params: Dict, key: str, default: Optional[str] = None) -> Optional[str]:
    """Get first value from query params"""
    values = params.get(key, [])
    return values[0] if values else default


def _common_tls_kwargs(params: Dict, hostname: str, tls_enabled: bool) -> Dict[str, Any]:
    alpn_str = _get_param(params, "alpn", "")
    return {
        "tls_enabled": tls_enabled,
        "tls_sni": _get_param(params, "sni") or hostname,
        "tls_fingerprint": _get_param(params, "fp"),
        "tls_allow_insecure": _get_param(params, "allowInsecure") == "1",
        "tls_alpn": [a.strip() for a in alpn_str.split(",") if a.strip()] or None,
    }


def _tls_params(obj: _ServerBase) -> List[str]:
    params = []
    if obj.tls_sni:
        params.append(f"sni={obj.tls_sni}")
    if obj.tls_fingerprint:
        params.append(f"fp={obj.tls_fingerprint}")
    if obj.tls_alpn:
        params.append(f"alpn={','.join(obj.tls_alpn)}")
    return params


def _transport_params(transport_type: str, transport_config: Optional[Dict[str, Any]]) -> List[str]:
    params = []
    if transport_type != "tcp":
        params.append(f"type={transport_type}")
    transport_config = transport_config or {}
    if transport_type == "ws":
        if transport_config.get("path"):
            params.append(f"path={quote(transport_config['path'])}")
        if transport_config.get("headers", {}).get("Host"):
            params.append(f"host={transport_config['headers']['Host']}")
    elif transport_type == "grpc":
        if transport_config.get("service_name"):
            params.append(f"serviceName={transport_config['service_name']}")
        if transport_config.get("authority"):
            params.append(f"authority={transport_config['authority']}")
    elif transport_type in ("h2", "httpupgrade", "xhttp"):
        if transport_config.get("path"):
            params.append(f"path={quote(transport_config['path'])}")
        host = transport_config.get("host")
        if isinstance(host, list):
            host = host[0] if host else ""
        if host:
            params.append(f"host={host}")
    return params


def _normalize_transport_type(net: str) -> str:
    """Normalize transport type name"""
    mapping = {
        "tcp": "tcp",
        "ws": "ws",
        "websocket": "ws",
        "grpc": "grpc",
        "gun": "grpc",
        "h2": "h2",
        "http": "http",
        "quic": "quic",
        "httpupgrade": "httpupgrade",
        "xhttp": "xhttp",
    }
    return mapping.get(net.lower(), "tcp")


def _transport_config_from_vmess(net: str, data: Dict) -> Optional[Dict]:
    """Build transport config from VMess JSON data"""
    net = net.lower()
    host = data.get("host", "")

    if net in ("ws", "websocket"):
        config: Dict[str, Any] = {"path": data.get("path") or "/"}
        if host:
            config["headers"] = {"Host": host}
        return config
    if net in ("grpc", "gun"):
        config = {}
        service_name = data.get("path") or data.get("serviceName")
        if service_name:
            config["service_name"] = service_name
        if host or data.get("authority"):
            config["authority"] = host or data["authority"]
        return config or None
    if net in ("h2", "http"):
        config = {}
        if data.get("path"):
            config["path"] = data["path"]
        if host:
            config["host"] = [host]
        return config or None
    return None


def _transport_config_from_params(transport_type: str, params: Dict) -> Optional[Dict]:
    """Build transport config from URI query params"""
    transport_type = transport_type.lower()

    if transport_type in ("ws", "websocket"):
        config: Dict[str, Any] = {"path": _get_param(params, "path", "/")}
        host = _get_param(params, "host")
        if host:
            config["headers"] = {"Host": host}
        return config
    if transport_type in ("grpc", "gun"):
        config = {}
        service_name = _get_param(params, "serviceName") or _get_param(params, "path")
        authority = _get_param(params, "authority") or _get_param(params, "host")
        if service_name:
            config["service_name"] = service_name
        if authority:
            config["authority"] = authority
        return config or None
    if transport_type in ("h2", "httpupgrade", "xhttp"):
        config = {"path": _get_param(params, "path", "/")}
        host = _get_param(params, "host")
        if host:
            config["host"] = [host] if transport_type == "h2" else host
        return config
    return None
