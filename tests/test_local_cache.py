"""Tests for the local durable store and snapshot cache.

Verifies that:
- tables are created on first open and data survives a reopen
- response, list and record snapshots round-trip and are upserts
- stale reads return None and never delete the entry
- query fingerprints ignore key order
- list write-through stores one record snapshot per keyed row
"""

from farmsync.cache.snapshots import LocalCache, query_fingerprint
from farmsync.cache.store import LocalStore, load_json

LIST_PAYLOAD = {
    "module_key": "TASKS",
    "table": "tasks",
    "primary_key": "task_id",
    "page": 1,
    "page_size": 20,
    "total_count": 2,
    "total_pages": 1,
    "rows": [
        {"task_id": 2, "farm_id": 7, "title": "Vaccinate"},
        {"task_id": 1, "farm_id": 7, "title": "Clean"},
    ],
}


# ============================================================================
# Local Store
# ============================================================================


class TestLocalStore:
    def test_creates_parent_directory_and_file(self, tmp_path) -> None:
        path = tmp_path / "nested" / "dir" / "cache.sqlite"
        store = LocalStore(path)
        try:
            assert path.exists()
            assert store.stats().file_path == str(path)
        finally:
            store.close()

    def test_data_survives_reopen(self, tmp_path, clock) -> None:
        path = tmp_path / "cache.sqlite"
        first = LocalStore(path, clock=clock)
        LocalCache(first).put("k", {"v": 1})
        first.close()

        second = LocalStore(path, clock=clock)
        try:
            assert LocalCache(second).get("k") == {"v": 1}
        finally:
            second.close()

    def test_now_ms_uses_clock(self, local_store, clock) -> None:
        assert local_store.now_ms() == int(clock.now * 1000)
        clock.advance(1.5)
        assert local_store.now_ms() == int(clock.now * 1000)

    def test_stats_counts(self, local_store, cache) -> None:
        cache.put("a", 1)
        cache.list_put("TASKS", "tasks", 7, {}, LIST_PAYLOAD)
        cache.record_put("TASKS", "tasks", 7, 1, {"record": {}})

        stats = local_store.stats()
        assert stats.response_cache_count == 1
        assert stats.entity_list_snapshot_count == 1
        assert stats.entity_record_snapshot_count == 1

    def test_load_json_tolerates_corrupt_payload(self) -> None:
        assert load_json("{not json", {"fallback": True}) == {"fallback": True}
        assert load_json(None, []) == []


# ============================================================================
# Fingerprints
# ============================================================================


class TestQueryFingerprint:
    def test_key_order_does_not_matter(self) -> None:
        assert query_fingerprint({"page": 1, "search": "x"}) == query_fingerprint(
            {"search": "x", "page": 1}
        )

    def test_different_queries_differ(self) -> None:
        assert query_fingerprint({"page": 1}) != query_fingerprint({"page": 2})

    def test_none_equals_empty(self) -> None:
        assert query_fingerprint(None) == query_fingerprint({})


# ============================================================================
# Response Cache
# ============================================================================


class TestResponseCache:
    def test_round_trip_and_upsert(self, cache) -> None:
        cache.put("modules:1:7:TASKS:tasks:list", {"v": 1})
        cache.put("modules:1:7:TASKS:tasks:list", {"v": 2})

        assert cache.get("modules:1:7:TASKS:tasks:list") == {"v": 2}
        assert cache.store.stats().response_cache_count == 1

    def test_missing_key(self, cache) -> None:
        assert cache.get("absent") is None

    def test_stale_read_returns_none_but_keeps_entry(self, cache, clock) -> None:
        cache.put("k", {"v": 1})
        clock.advance(60)

        assert cache.get("k", max_age_seconds=45) is None
        assert cache.get("k", max_age_seconds=3600) == {"v": 1}

    def test_default_max_age_is_configured_ttl(self, local_store, clock) -> None:
        cache = LocalCache(local_store, default_max_age_seconds=10)
        cache.put("k", 1)

        clock.advance(5)
        assert cache.get("k") == 1
        clock.advance(10)
        assert cache.get("k") is None


# ============================================================================
# Entity Snapshots
# ============================================================================


class TestListSnapshots:
    def test_keys_are_normalized(self, cache) -> None:
        cache.list_put("tasks", " tasks ", "7", {"page": 1}, LIST_PAYLOAD)

        assert cache.list_get("TASKS", "tasks", 7, {"page": 1}) == LIST_PAYLOAD

    def test_different_farm_is_separate(self, cache) -> None:
        cache.list_put("TASKS", "tasks", 7, {}, LIST_PAYLOAD)
        assert cache.list_get("TASKS", "tasks", 8, {}) is None

    def test_latest_ignores_query(self, cache, clock) -> None:
        cache.list_put("TASKS", "tasks", 7, {"page": 1}, {"rows": ["old"]})
        clock.advance(1)
        cache.list_put("TASKS", "tasks", 7, {"page": 2}, {"rows": ["new"]})

        assert cache.list_get_latest("TASKS", "tasks", 7) == {"rows": ["new"]}

    def test_latest_respects_max_age(self, cache, clock) -> None:
        cache.list_put("TASKS", "tasks", 7, {}, LIST_PAYLOAD)
        clock.advance(100)
        assert cache.list_get_latest("TASKS", "tasks", 7, max_age_seconds=50) is None


class TestRecordSnapshots:
    def test_round_trip(self, cache) -> None:
        cache.record_put("TASKS", "tasks", 7, 1, {"record": {"task_id": 1}})
        assert cache.record_get("TASKS", "tasks", 7, "1") == {"record": {"task_id": 1}}

    def test_blank_id_is_ignored(self, cache) -> None:
        cache.record_put("TASKS", "tasks", 7, "  ", {"record": {}})

        assert cache.record_get("TASKS", "tasks", 7, "") is None
        assert cache.store.stats().entity_record_snapshot_count == 0

    def test_delete(self, cache) -> None:
        cache.record_put("TASKS", "tasks", 7, 1, {"record": {}})
        cache.record_delete("TASKS", "tasks", 7, 1)

        assert cache.record_get("TASKS", "tasks", 7, 1) is None


class TestPersistListSnapshot:
    def test_writes_list_and_record_snapshots(self, cache) -> None:
        written = cache.persist_list_snapshot("TASKS", "tasks", 7, {"page": 1}, LIST_PAYLOAD)

        assert written == 2
        assert cache.list_get("TASKS", "tasks", 7, {"page": 1}) == LIST_PAYLOAD
        assert cache.record_get("TASKS", "tasks", 7, 2) == {
            "module_key": "TASKS",
            "table": "tasks",
            "primary_key": "task_id",
            "record": {"task_id": 2, "farm_id": 7, "title": "Vaccinate"},
        }

    def test_keyless_payload_writes_only_list(self, cache) -> None:
        payload = {**LIST_PAYLOAD, "primary_key": None}

        assert cache.persist_list_snapshot("REPORTS", "audit_log", 7, {}, payload) == 0
        assert cache.store.stats().entity_record_snapshot_count == 0
        assert cache.list_get("REPORTS", "audit_log", 7, {}) == payload

    def test_rows_without_id_are_skipped(self, cache) -> None:
        payload = {**LIST_PAYLOAD, "rows": [{"task_id": None}, {"title": "x"}, {"task_id": 9}]}
        assert cache.persist_list_snapshot("TASKS", "tasks", 7, {}, payload) == 1
