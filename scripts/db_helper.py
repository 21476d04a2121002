#!/usr/bin/env python3
"""
持久化存储

单个 SQLite 文件保存全部配置：
- kv 表：按 bucket/key 保存设置、账户、端口、运行标志等单值记录
- list_items 表：按 bucket 保存有序列表（v1/v2 服务器与订阅），id 自增即顺序

进程内只打开一个 Store，启动时由 daemon 创建并显式传给各组件；
close() 之后任何访问都会抛出 StoreClosedError，不会重新打开。
"""
import json
import logging
import os
import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import List, Optional, Type, TypeVar

from pydantic import BaseModel, ValidationError

from configure import (
    Configure,
    Ports,
    ServerRaw,
    ServerRawV2,
    Setting,
    SubscriptionRaw,
    SubscriptionRawV2,
    Which,
)
from errors import StoreClosedError, StoreError

logger = logging.getLogger(__name__)

DB_FILENAME = "proxyd.db"

STORE_SCHEMA = """
CREATE TABLE IF NOT EXISTS kv (
    bucket TEXT NOT NULL,
    key TEXT NOT NULL,
    value TEXT NOT NULL,
    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    PRIMARY KEY (bucket, key)
);

CREATE TABLE IF NOT EXISTS list_items (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    bucket TEXT NOT NULL,
    value TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_list_bucket ON list_items(bucket, id);
"""

# buckets
SYSTEM = "system"
SERVERS = "servers"
SUBSCRIPTIONS = "subscriptions"
SERVERS_V2 = "servers_v2"
SUBSCRIPTIONS_V2 = "subscriptions_v2"

M = TypeVar("M", bound=BaseModel)


class Store:
    """配置数据库

    使用线程本地连接缓存，
    调度器线程池中的刷新任务各自持有连接，由 SQLite WAL 负责并发读写。
    """

    def __init__(self, db_path: Path):
        self.db_path = Path(db_path)
        self._local = threading.local()
        self._conns: List[sqlite3.Connection] = []
        self._conns_lock = threading.Lock()
        self._closed = False

    @classmethod
    def open(cls, config_dir: Path) -> "Store":
        """打开（必要时创建）配置目录下的数据库并收紧目录权限"""
        config_dir = Path(config_dir)
        config_dir.mkdir(mode=0o750, parents=True, exist_ok=True)
        store = cls(config_dir / DB_FILENAME)
        try:
            with store._transaction(f"open store {store.db_path}") as (conn, cursor):
                cursor.executescript(STORE_SCHEMA)
        finally:
            # for privacy
            os.chmod(config_dir, 0o750)
        logger.debug(f"Store opened: {store.db_path}")
        return store

    # ============ 连接管理 ============

    def _get_cached_conn(self) -> sqlite3.Connection:
        if self._closed:
            raise StoreClosedError("store is closed")
        conn = getattr(self._local, "conn", None)
        if conn is None:
            conn = sqlite3.connect(str(self.db_path), check_same_thread=False, timeout=30.0)
            conn.execute("PRAGMA journal_mode = WAL")
            conn.execute("PRAGMA synchronous = NORMAL")
            self._local.conn = conn
            with self._conns_lock:
                self._conns.append(conn)
            logger.debug(f"Created new database connection for thread {threading.current_thread().name}")
        return conn

    @contextmanager
    def _transaction(self, action: str = "access store"):
        """事务上下文：成功提交，异常回滚

        sqlite3.Error 统一转换为 StoreError，调用方只需处理 ProxydError。
        """
        try:
            conn = self._get_cached_conn()
            cursor = conn.cursor()
        except sqlite3.Error as e:
            raise StoreError(f"failed to {action}: {e}") from e
        try:
            yield conn, cursor
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            raise StoreError(f"failed to {action}: {e}") from e
        except Exception:
            conn.rollback()
            raise

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        """关闭所有线程的连接；只生效一次"""
        if self._closed:
            return
        self._closed = True
        with self._conns_lock:
            conns, self._conns = self._conns, []
        for conn in conns:
            try:
                conn.close()
            except sqlite3.Error as e:
                logger.warning(f"Error closing connection: {e}")
        logger.debug("Store closed")

    # ============ 基础读写 ============

    def _get_value(self, bucket: str, key: str) -> Optional[str]:
        with self._transaction(f"read {bucket}/{key}") as (conn, cursor):
            row = cursor.execute(
                "SELECT value FROM kv WHERE bucket = ? AND key = ?", (bucket, key)
            ).fetchone()
        return row[0] if row else None

    def _set_value(self, cursor: sqlite3.Cursor, bucket: str, key: str, value: str) -> None:
        cursor.execute("""
            INSERT OR REPLACE INTO kv (bucket, key, value, updated_at)
            VALUES (?, ?, ?, CURRENT_TIMESTAMP)
        """, (bucket, key, value))

    def _get_model(self, key: str, model: Type[M], default: M) -> M:
        raw = self._get_value(SYSTEM, key)
        if raw is None:
            return default
        try:
            return model.model_validate_json(raw)
        except ValidationError as e:
            raise StoreError(f"corrupted record {SYSTEM}/{key}: {e}") from e

    def _get_list(self, bucket: str, model: Type[M]) -> List[M]:
        with self._transaction(f"read list {bucket}") as (conn, cursor):
            rows = cursor.execute(
                "SELECT value FROM list_items WHERE bucket = ? ORDER BY id", (bucket,)
            ).fetchall()
        try:
            return [model.model_validate_json(row[0]) for row in rows]
        except ValidationError as e:
            raise StoreError(f"corrupted list {bucket}: {e}") from e

    def _count(self, bucket: str) -> int:
        with self._transaction(f"count {bucket}") as (conn, cursor):
            return cursor.execute(
                "SELECT COUNT(*) FROM list_items WHERE bucket = ?", (bucket,)
            ).fetchone()[0]

    def _append_list(self, cursor: sqlite3.Cursor, bucket: str, items: List[BaseModel]) -> None:
        cursor.executemany(
            "INSERT INTO list_items (bucket, value) VALUES (?, ?)",
            [(bucket, item.model_dump_json(by_alias=True)) for item in items],
        )

    # ============ 整体配置 ============

    def is_configure_absent(self) -> bool:
        return self._get_value(SYSTEM, "setting") is None

    def get_configure(self) -> Configure:
        accounts_raw = self._get_value(SYSTEM, "accounts")
        return Configure(
            servers=self.get_servers(),
            subscriptions=self.get_subscriptions(),
            connected_servers=self.get_connected_servers(),
            setting=self.get_setting(),
            accounts=json.loads(accounts_raw) if accounts_raw else {},
            ports=self.get_ports(),
        )

    def set_configure(self, cfg: Configure) -> None:
        """整体写入配置（一个事务），v1 列表被替换"""
        with self._transaction("write configuration") as (conn, cursor):
            self._set_value(cursor, SYSTEM, "setting", cfg.setting.to_json())
            self._set_value(cursor, SYSTEM, "ports", cfg.ports.to_json())
            self._set_value(cursor, SYSTEM, "accounts", json.dumps(cfg.accounts))
            self._set_value(cursor, SYSTEM, "connected_servers", json.dumps(
                [w.model_dump(by_alias=True) for w in cfg.connected_servers]
            ))
            cursor.execute(
                "DELETE FROM list_items WHERE bucket IN (?, ?)", (SERVERS, SUBSCRIPTIONS)
            )
            self._append_list(cursor, SERVERS, cfg.servers)
            self._append_list(cursor, SUBSCRIPTIONS, cfg.subscriptions)

    # ============ 服务器与订阅 ============

    def get_servers(self) -> List[ServerRaw]:
        return self._get_list(SERVERS, ServerRaw)

    def get_subscriptions(self) -> List[SubscriptionRaw]:
        return self._get_list(SUBSCRIPTIONS, SubscriptionRaw)

    def get_servers_v2(self) -> List[ServerRawV2]:
        return self._get_list(SERVERS_V2, ServerRawV2)

    def get_subscriptions_v2(self) -> List[SubscriptionRawV2]:
        return self._get_list(SUBSCRIPTIONS_V2, SubscriptionRawV2)

    def count_v1(self) -> int:
        return self._count(SERVERS) + self._count(SUBSCRIPTIONS)

    def count_v2(self) -> int:
        return self._count(SERVERS_V2) + self._count(SUBSCRIPTIONS_V2)

    def append_servers(self, servers: List[ServerRawV2]) -> None:
        """追加一批 v2 服务器（全部成功或全部失败）"""
        with self._transaction("append servers") as (conn, cursor):
            self._append_list(cursor, SERVERS_V2, servers)

    def append_subscriptions(self, subscriptions: List[SubscriptionRawV2]) -> None:
        """追加一批 v2 订阅（全部成功或全部失败）"""
        with self._transaction("append subscriptions") as (conn, cursor):
            self._append_list(cursor, SUBSCRIPTIONS_V2, subscriptions)

    def set_subscription_v2(self, index: int, subscription: SubscriptionRawV2) -> None:
        """替换第 index 个 v2 订阅（下标从 0 开始）"""
        with self._transaction(f"update subscription {index}") as (conn, cursor):
            row = cursor.execute(
                "SELECT id FROM list_items WHERE bucket = ? ORDER BY id LIMIT 1 OFFSET ?",
                (SUBSCRIPTIONS_V2, index),
            ).fetchone()
            if row is None:
                raise StoreError(f"subscription index out of range: {index}")
            cursor.execute(
                "UPDATE list_items SET value = ? WHERE id = ?",
                (subscription.model_dump_json(by_alias=True), row[0]),
            )

    # ============ 设置与运行状态 ============

    def get_setting(self) -> Setting:
        return self._get_model("setting", Setting, Setting())

    def set_setting(self, setting: Setting) -> None:
        with self._transaction("write setting") as (conn, cursor):
            self._set_value(cursor, SYSTEM, "setting", setting.to_json())

    def get_ports(self) -> Ports:
        return self._get_model("ports", Ports, Ports())

    def get_connected_servers(self) -> List[Which]:
        raw = self._get_value(SYSTEM, "connected_servers")
        if not raw:
            return []
        return [Which.model_validate(item) for item in json.loads(raw)]

    def get_running(self) -> bool:
        """代理核心是否应该处于运行状态"""
        return self._get_value(SYSTEM, "running") == "true"

    def set_running(self, running: bool) -> None:
        with self._transaction("write running flag") as (conn, cursor):
            self._set_value(cursor, SYSTEM, "running", "true" if running else "false")

    def reset_accounts(self) -> None:
        with self._transaction("reset accounts") as (conn, cursor):
            self._set_value(cursor, SYSTEM, "accounts", "{}")
