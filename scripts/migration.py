#!/usr/bin/env python3
"""
配置迁移

启动时把数据库从未知状态推进到当前 schema：

    StoreAbsent ──(legacy JSON 解析成功)──> MIGRATED_FROM_LEGACY
    StoreAbsent ──(无可用 legacy JSON)────> DEFAULTED
    仅有 v1 数据 ──(schema 升级)──────────> UPGRADED_TO_V2
    其他 ────────────────────────────────> CURRENT（不写入任何数据）

单个 legacy 文件或单条服务器迁移失败只记录日志；
默认配置写入失败则抛出 ConfigurationInitError，由 daemon 终止进程。
"""

import logging
from enum import Enum
from pathlib import Path
from typing import Iterable, List, Optional, Sequence

from pydantic import ValidationError

from configure import (
    Configure,
    ServerRaw,
    ServerRawV2,
    SubscriptionRaw,
    SubscriptionRawV2,
)
from db_helper import Store
from errors import ConfigurationInitError, ProxydError, ServerObjError
from server_obj import new_from_link

logger = logging.getLogger(__name__)

LEGACY_PROTOCOL = "vmess"
LEGACY_CONFIG_NAME = "v2raya.json"


class MigrationState(Enum):
    MIGRATED_FROM_LEGACY = "migrated_from_legacy"
    DEFAULTED = "defaulted"
    UPGRADED_TO_V2 = "upgraded_to_v2"
    CURRENT = "current"


def legacy_candidates(config_dir: Path) -> List[Path]:
    """legacy JSON 的候选路径，按优先级排列"""
    return [
        Path(config_dir).parent / LEGACY_CONFIG_NAME,
        Path("/etc/v2ray") / LEGACY_CONFIG_NAME,
        Path("/etc/v2raya") / LEGACY_CONFIG_NAME,
    ]


def _convert_server(raw: ServerRaw) -> Optional[ServerRawV2]:
    info = raw.vmess_info
    protocol = info.protocol or LEGACY_PROTOCOL
    info = info.model_copy(update={"protocol": protocol})
    try:
        obj = new_from_link(protocol, info.export_to_url())
    except ServerObjError as e:
        logger.warning(f"failed to migrate: {info.ps} ({e})")
        return None
    return ServerRawV2(server_obj=obj, latency=raw.latency)


def build_server_batch(servers: Iterable[ServerRaw]) -> List[ServerRawV2]:
    """把 v1 服务器转换为 v2，无法解析的条目跳过"""
    batch = []
    for raw in servers:
        converted = _convert_server(raw)
        if converted is not None:
            batch.append(converted)
    return batch


def build_subscription_batch(subscriptions: Iterable[SubscriptionRaw]) -> List[SubscriptionRawV2]:
    """把 v1 订阅转换为 v2

    订阅本身总是保留，即使其中部分服务器转换失败。
    """
    return [
        SubscriptionRawV2(
            remarks=raw.remarks,
            address=raw.address,
            status=raw.status,
            servers=build_server_batch(raw.servers),
            info=raw.info,
        )
        for raw in subscriptions
    ]


def upgrade_schema(store: Store) -> None:
    """v1 -> v2：每类记录一次性追加，空批次不写入"""
    servers = build_server_batch(store.get_servers())
    if servers:
        try:
            store.append_servers(servers)
        except ProxydError as e:
            logger.warning(f"failed to migrate: {e}")

    subscriptions = build_subscription_batch(store.get_subscriptions())
    if subscriptions:
        try:
            store.append_subscriptions(subscriptions)
        except ProxydError as e:
            logger.warning(f"failed to migrate: {e}")


class MigrationPipeline:
    """启动期配置迁移"""

    def __init__(self, store: Store, config_dir: Path, candidates: Optional[Sequence[Path]] = None):
        self.store = store
        self.config_dir = Path(config_dir)
        self.candidates = list(candidates) if candidates is not None else legacy_candidates(self.config_dir)

    def needs_schema_upgrade(self) -> bool:
        return self.store.count_v1() > 0 and self.store.count_v2() == 0

    def migrate_legacy(self, path: Path) -> None:
        """读取 legacy JSON 并整体写入数据库"""
        logger.info("Migrating json to store...")
        try:
            cfg = Configure.from_json(Path(path).read_bytes())
            self.store.set_configure(cfg)
        except (OSError, ValidationError, ProxydError) as e:
            logger.warning(f"Migrating failed: {e}")
            raise
        logger.info("Migrating complete")

    def init_default(self) -> None:
        logger.info("init DB")
        try:
            self.store.set_configure(Configure.new())
        except ProxydError as e:
            raise ConfigurationInitError(f"initDBValue: {e}") from e

    def run(self) -> MigrationState:
        if not self.store.is_configure_absent():
            if self.needs_schema_upgrade():
                logger.info("migrating server format from v1 to v2...")
                upgrade_schema(self.store)
                return MigrationState.UPGRADED_TO_V2
            return MigrationState.CURRENT

        for path in self.candidates:
            if not path.exists():
                continue
            logger.info(f"migrate from {path}")
            try:
                self.migrate_legacy(path)
            except (OSError, ValidationError, ProxydError):
                continue
            # legacy 数据即为 v1 schema，同一次启动内直接升级
            if self.needs_schema_upgrade():
                logger.info("migrating server format from v1 to v2...")
                upgrade_schema(self.store)
            return MigrationState.MIGRATED_FROM_LEGACY

        self.init_default()
        return MigrationState.DEFAULTED
