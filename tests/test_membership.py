"""Tests for the membership table."""

import threading

from lanmeet.discovery.membership import MembershipTable, UpsertResult


def _upsert(table, node_id="b", port=45454, now=0.0, name="Bob", comm=("239.255.43.22", 45455)):
    return table.upsert(node_id, "10.0.0.2", port, comm[0], comm[1], now, display_name=name)


class TestUpsert:
    def test_first_sighting_joins(self):
        table = MembershipTable()
        assert _upsert(table) == UpsertResult.JOINED
        assert "b" in table
        assert len(table) == 1

    def test_unchanged_is_refresh_only(self):
        table = MembershipTable()
        _upsert(table, now=1.0)
        assert _upsert(table, now=2.0) == UpsertResult.REFRESHED
        assert table.get("b").last_seen == 2.0

    def test_changed_port_is_update(self):
        table = MembershipTable()
        _upsert(table, now=1.0)
        assert _upsert(table, port=50000, now=2.0) == UpsertResult.UPDATED
        record = table.get("b")
        assert record.source_port == 50000
        assert record.last_seen == 2.0
        assert record.joined_at == 1.0

    def test_changed_name_is_update(self):
        table = MembershipTable()
        _upsert(table)
        assert _upsert(table, name="Robert") == UpsertResult.UPDATED

    def test_changed_comm_group_is_update(self):
        table = MembershipTable()
        _upsert(table)
        assert _upsert(table, comm=("239.1.1.1", 45455)) == UpsertResult.UPDATED


class TestExpire:
    def test_evicts_only_stale(self):
        table = MembershipTable()
        _upsert(table, "old", now=0.0)
        _upsert(table, "new", now=4.0)
        evicted = table.expire(timeout=5.0, now=5.5)
        assert [r.id for r in evicted] == ["old"]
        assert "old" not in table
        assert "new" in table

    def test_boundary_is_not_stale(self):
        table = MembershipTable()
        _upsert(table, now=0.0)
        assert table.expire(timeout=5.0, now=5.0) == []

    def test_each_record_evicted_once(self):
        table = MembershipTable()
        _upsert(table, now=0.0)
        assert len(table.expire(1.0, 10.0)) == 1
        assert table.expire(1.0, 10.0) == []

    def test_refresh_postpones_eviction(self):
        table = MembershipTable()
        _upsert(table, now=0.0)
        _upsert(table, now=4.0)
        assert table.expire(timeout=5.0, now=6.0) == []


class TestSnapshot:
    def test_snapshot_is_a_copy(self):
        table = MembershipTable()
        _upsert(table)
        snap = table.snapshot()
        snap[0].source_port = 1
        _upsert(table, "c")
        assert len(snap) == 1
        assert table.get("b").source_port == 45454

    def test_get_unknown(self):
        assert MembershipTable().get("nope") is None

    def test_remove(self):
        table = MembershipTable()
        _upsert(table)
        assert table.remove("b").id == "b"
        assert table.remove("b") is None

    def test_clear(self):
        table = MembershipTable()
        _upsert(table, "b")
        _upsert(table, "c")
        table.clear()
        assert table.snapshot() == []


class TestConcurrency:
    def test_parallel_writers_and_reaper(self):
        """Refreshes racing evictions leave every id either present or evicted once."""
        table = MembershipTable()
        evicted: list[str] = []
        ids = [f"n{i}" for i in range(50)]

        def writer():
            for step in range(200):
                for nid in ids:
                    table.upsert(nid, "10.0.0.9", 1, "239.1.1.1", 2, float(step))

        def reaper():
            for step in range(200):
                evicted.extend(r.id for r in table.expire(0.5, float(step) + 1.0))

        threads = [threading.Thread(target=writer), threading.Thread(target=reaper)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        for record in table.snapshot():
            assert record.id in ids
            assert record.source_address == "10.0.0.9"
            assert record.comm_port == 2
        assert set(evicted) <= set(ids)
