#!/usr/bin/env python3
"""Unit tests for the configuration store

Run: pytest tests/unit/test_db_helper.py -v
"""

import sqlite3
import stat
from unittest.mock import MagicMock

import pytest

from configure import (
    AutoUpdateMode,
    Configure,
    ServerRaw,
    ServerRawV2,
    Setting,
    SubscriptionRaw,
    SubscriptionRawV2,
    VmessInfo,
    Which,
)
from db_helper import DB_FILENAME, Store
from errors import StoreClosedError, StoreError
from server_obj import new_from_link


def _v2_server(name: str) -> ServerRawV2:
    return ServerRawV2(server_obj=new_from_link("trojan", f"trojan://pw@{name}.example.com:443#{name}"))


class TestOpen:
    def test_creates_directory_with_private_mode(self, config_dir):
        store = Store.open(config_dir)
        try:
            assert (config_dir / DB_FILENAME).exists()
            assert stat.S_IMODE(config_dir.stat().st_mode) == 0o750
        finally:
            store.close()

    def test_tightens_existing_directory(self, config_dir):
        config_dir.mkdir(mode=0o777)
        config_dir.chmod(0o777)
        Store.open(config_dir).close()
        assert stat.S_IMODE(config_dir.stat().st_mode) == 0o750

    def test_fresh_store_is_absent(self, store):
        assert store.is_configure_absent() is True
        assert store.count_v1() == 0
        assert store.count_v2() == 0


class TestConfigure:
    def test_round_trip(self, store, vmess_legacy):
        cfg = Configure(
            servers=[ServerRaw(vmess_info=VmessInfo(**vmess_legacy), latency="120ms")],
            subscriptions=[SubscriptionRaw(remarks="main", address="https://sub.example.com/a")],
            connected_servers=[Which(type="server", id=1)],
            setting=Setting(subscription_auto_update_mode=AutoUpdateMode.ON_EVERY_START),
            accounts={"admin": "hash"},
        )
        store.set_configure(cfg)

        assert store.is_configure_absent() is False
        loaded = store.get_configure()
        assert loaded.servers[0].vmess_info.ps == "tokyo-01"
        assert loaded.servers[0].latency == "120ms"
        assert loaded.subscriptions[0].address == "https://sub.example.com/a"
        assert loaded.connected_servers == [Which(type="server", id=1)]
        assert loaded.setting.subscription_auto_update_mode == AutoUpdateMode.ON_EVERY_START
        assert loaded.accounts == {"admin": "hash"}

    def test_set_configure_replaces_v1_lists(self, store, vmess_legacy):
        one = ServerRaw(vmess_info=VmessInfo(**vmess_legacy))
        store.set_configure(Configure(servers=[one, one]))
        store.set_configure(Configure(servers=[one]))
        assert len(store.get_servers()) == 1

    def test_reset_accounts(self, store):
        store.set_configure(Configure(accounts={"admin": "hash"}))
        store.reset_accounts()
        assert store.get_configure().accounts == {}


class TestV2Lists:
    def test_append_keeps_order(self, store):
        store.append_servers([_v2_server("a"), _v2_server("b")])
        store.append_servers([_v2_server("c")])
        assert [s.server_obj.name for s in store.get_servers_v2()] == ["a", "b", "c"]

    def test_set_subscription_v2(self, store):
        store.append_subscriptions([
            SubscriptionRawV2(remarks="first", address="https://one"),
            SubscriptionRawV2(remarks="second", address="https://two"),
        ])
        store.set_subscription_v2(1, SubscriptionRawV2(remarks="second", address="https://two",
                                                       servers=[_v2_server("x")], status="ok"))
        subs = store.get_subscriptions_v2()
        assert subs[0].servers == []
        assert subs[1].status == "ok"
        assert subs[1].servers[0].server_obj.server == "x.example.com"

    def test_set_subscription_out_of_range(self, store):
        with pytest.raises(StoreError):
            store.set_subscription_v2(3, SubscriptionRawV2())


class TestRunningFlag:
    def test_defaults_to_stopped(self, store):
        assert store.get_running() is False

    def test_set_running(self, store):
        store.set_running(True)
        assert store.get_running() is True


class TestClose:
    def test_use_after_close_raises(self, config_dir):
        store = Store.open(config_dir)
        store.close()
        assert store.closed is True
        with pytest.raises(StoreClosedError):
            store.get_setting()

    def test_close_is_idempotent(self, config_dir):
        store = Store.open(config_dir)
        store.close()
        store.close()
        assert store.closed is True

    def test_reopen_sees_data(self, config_dir):
        store = Store.open(config_dir)
        store.set_running(True)
        store.close()

        reopened = Store.open(config_dir)
        try:
            assert reopened.get_running() is True
        finally:
            reopened.close()


class TestDatabaseErrors:
    @pytest.fixture
    def locked_store(self, store):
        conn = MagicMock()
        conn.cursor.return_value.execute.side_effect = sqlite3.OperationalError("database is locked")
        store._local.conn = conn
        return store, conn

    @pytest.mark.parametrize("call", [
        lambda s: s.get_subscriptions_v2(),
        lambda s: s.get_setting(),
        lambda s: s.get_running(),
        lambda s: s.set_setting(Setting()),
        lambda s: s.set_running(True),
        lambda s: s.reset_accounts(),
        lambda s: s.set_subscription_v2(0, SubscriptionRawV2()),
    ])
    def test_sqlite_errors_become_store_errors(self, locked_store, call):
        store, conn = locked_store
        with pytest.raises(StoreError, match="database is locked"):
            call(store)
        conn.rollback.assert_called()
