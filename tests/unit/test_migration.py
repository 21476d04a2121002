#!/usr/bin/env python3
"""Unit tests for configuration migration (legacy JSON -> store, schema v1 -> v2)

Run: pytest tests/unit/test_migration.py -v
"""

import json
import logging
from unittest.mock import patch

import pytest

from configure import Configure, ServerRaw, SubscriptionRaw, VmessInfo
from errors import ConfigurationInitError, StoreError
from migration import (
    MigrationPipeline,
    MigrationState,
    build_server_batch,
    build_subscription_batch,
    legacy_candidates,
)


def _server(vmess_legacy, **overrides) -> ServerRaw:
    info = dict(vmess_legacy)
    info.update(overrides)
    return ServerRaw(vmess_info=VmessInfo(**info))


def _write_legacy(path, servers):
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps({
        "servers": [{"vmessInfo": s} for s in servers],
        "subscriptions": [],
        "setting": {"pacMode": "gfwlist"},
    }))
    return path


class TestLegacyCandidates:
    def test_order(self, config_dir):
        paths = legacy_candidates(config_dir)
        assert paths[0] == config_dir.parent / "v2raya.json"
        assert [str(p) for p in paths[1:]] == ["/etc/v2ray/v2raya.json", "/etc/v2raya/v2raya.json"]


class TestMigrationPipeline:
    def test_first_valid_candidate_wins(self, store, config_dir, temp_dir, vmess_legacy):
        missing = temp_dir / "missing" / "v2raya.json"
        broken = temp_dir / "broken" / "v2raya.json"
        broken.parent.mkdir()
        broken.write_text("{not json")
        first = _write_legacy(temp_dir / "a" / "v2raya.json", [dict(vmess_legacy, ps="from-a")])
        second = _write_legacy(temp_dir / "b" / "v2raya.json", [dict(vmess_legacy, ps="from-b")])

        pipeline = MigrationPipeline(store, config_dir, candidates=[missing, broken, first, second])
        assert pipeline.run() == MigrationState.MIGRATED_FROM_LEGACY

        assert [s.vmess_info.ps for s in store.get_servers()] == ["from-a"]
        assert store.get_setting().rule_port_mode.value == "gfwlist"

    def test_legacy_servers_upgraded_in_same_boot(self, store, config_dir, temp_dir, vmess_legacy):
        legacy = _write_legacy(temp_dir / "v2raya.json", [vmess_legacy])
        MigrationPipeline(store, config_dir, candidates=[legacy]).run()
        assert [s.server_obj.name for s in store.get_servers_v2()] == ["tokyo-01"]

    def test_all_candidates_invalid_defaults(self, store, config_dir, temp_dir, caplog):
        bad = temp_dir / "v2raya.json"
        bad.write_text('{"servers": "nope"}')

        with caplog.at_level(logging.WARNING):
            state = MigrationPipeline(store, config_dir, candidates=[bad]).run()

        assert state == MigrationState.DEFAULTED
        assert store.is_configure_absent() is False
        assert store.get_configure() == Configure.new()
        assert any("Migrating failed" in r.message for r in caplog.records)

    def test_default_write_failure_is_fatal(self, store, config_dir):
        pipeline = MigrationPipeline(store, config_dir, candidates=[])
        with patch.object(store, "set_configure", side_effect=StoreError("disk full")):
            with pytest.raises(ConfigurationInitError):
                pipeline.run()

    def test_v1_only_store_upgraded(self, store, config_dir, vmess_legacy):
        store.set_configure(Configure(servers=[_server(vmess_legacy)]))
        pipeline = MigrationPipeline(store, config_dir, candidates=[])
        assert pipeline.run() == MigrationState.UPGRADED_TO_V2
        assert store.count_v2() == 1

    def test_rerun_is_idempotent(self, store, config_dir, vmess_legacy):
        store.set_configure(Configure(
            servers=[_server(vmess_legacy)],
            subscriptions=[SubscriptionRaw(address="https://sub", servers=[_server(vmess_legacy)])],
        ))
        pipeline = MigrationPipeline(store, config_dir, candidates=[])
        pipeline.run()
        counts = (len(store.get_servers_v2()), len(store.get_subscriptions_v2()))

        assert pipeline.run() == MigrationState.CURRENT
        assert (len(store.get_servers_v2()), len(store.get_subscriptions_v2())) == counts == (1, 1)

    def test_current_store_untouched(self, store, config_dir):
        store.set_configure(Configure.new())
        with patch.object(store, "append_servers") as append_servers, \
                patch.object(store, "set_configure") as set_configure:
            assert MigrationPipeline(store, config_dir, candidates=[]).run() == MigrationState.CURRENT
        append_servers.assert_not_called()
        set_configure.assert_not_called()


class TestBatches:
    def test_three_of_five_survive(self, vmess_legacy, caplog):
        servers = [
            _server(vmess_legacy, ps="ok-1"),
            _server(vmess_legacy, ps="bad-address", add=""),
            _server(vmess_legacy, ps="ok-2", protocol="trojan"),
            _server(vmess_legacy, ps="bad-protocol", protocol="hysteria"),
            _server(vmess_legacy, ps="ok-3", protocol="vmess"),
        ]
        with caplog.at_level(logging.WARNING):
            batch = build_server_batch(servers)

        assert [s.server_obj.name for s in batch] == ["ok-1", "ok-2", "ok-3"]
        assert [s.server_obj.protocol for s in batch] == ["vmess", "trojan", "vmess"]
        warned = " ".join(r.message for r in caplog.records)
        assert "bad-address" in warned
        assert "bad-protocol" in warned

    def test_empty_protocol_treated_as_vmess(self, vmess_legacy):
        batch = build_server_batch([_server(vmess_legacy, protocol="")])
        assert batch[0].server_obj.protocol == "vmess"

    def test_latency_carried_over(self, vmess_legacy):
        raw = ServerRaw(vmess_info=VmessInfo(**vmess_legacy), latency="88ms")
        assert build_server_batch([raw])[0].latency == "88ms"

    def test_subscription_kept_with_partial_servers(self, vmess_legacy):
        sub = SubscriptionRaw(
            remarks="main",
            address="https://sub.example.com",
            status="Last update: 2024-01-01",
            servers=[_server(vmess_legacy, ps="good"), _server(vmess_legacy, ps="broken", id="")],
        )
        [converted] = build_subscription_batch([sub])
        assert converted.address == "https://sub.example.com"
        assert converted.status == "Last update: 2024-01-01"
        assert [s.server_obj.name for s in converted.servers] == ["good"]

    def test_batches_are_deterministic(self, vmess_legacy):
        servers = [
            _server(vmess_legacy, ps="ok-1"),
            _server(vmess_legacy, ps="bad-address", add=""),
            _server(vmess_legacy, ps="ok-2", protocol="trojan"),
        ]
        subscriptions = [
            SubscriptionRaw(remarks="a", servers=servers),
            SubscriptionRaw(remarks="b", servers=[_server(vmess_legacy, ps="broken", id="")]),
        ]

        first_servers = build_server_batch(servers)
        second_servers = build_server_batch(servers)
        first_subs = build_subscription_batch(subscriptions)
        second_subs = build_subscription_batch(subscriptions)

        assert len(first_servers) == len(second_servers) == 2
        assert first_servers == second_servers
        assert len(first_subs) == len(second_subs) == 2
        assert [len(s.servers) for s in first_subs] == [len(s.servers) for s in second_subs] == [2, 0]

    def test_empty_batches_not_written(self, store, config_dir):
        store.set_configure(Configure.new())
        with patch.object(store, "append_servers") as append_servers, \
                patch.object(store, "append_subscriptions") as append_subscriptions:
            from migration import upgrade_schema
            upgrade_schema(store)
        append_servers.assert_not_called()
        append_subscriptions.assert_not_called()
