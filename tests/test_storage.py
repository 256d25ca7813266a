import pytest

from pulse_ingest.core.database import build_engine, build_session_factory, create_tables
from pulse_ingest.storage.kv_store import InMemoryKeyValueStore
from pulse_ingest.storage.sql_kv_store import SqlKeyValueStore


@pytest.fixture
def sql_kv(tmp_path, clock):
    engine = build_engine(f"sqlite:///{tmp_path / 'kv.db'}")
    create_tables(engine)
    yield SqlKeyValueStore(build_session_factory(engine), clock=clock)
    engine.dispose()


class TestInMemoryKeyValueStore:
    @pytest.mark.asyncio
    async def test_put_get_delete(self, kv):
        await kv.put("last_processed_timestamp", "1704067200000")
        assert await kv.get("last_processed_timestamp") == "1704067200000"

        await kv.delete("last_processed_timestamp")
        assert await kv.get("last_processed_timestamp") is None

    @pytest.mark.asyncio
    async def test_entries_expire_after_ttl(self, kv, clock):
        await kv.put("health_check_1", "ok", ttl_seconds=60)
        clock.advance(59)
        assert await kv.get("health_check_1") == "ok"

        clock.advance(1)
        assert await kv.get("health_check_1") is None

    @pytest.mark.asyncio
    async def test_list_keys_filters_prefix_and_expired(self, kv, clock):
        await kv.put("processing_run_a", "{}")
        await kv.put("processing_run_b", "{}", ttl_seconds=10)
        await kv.put("error_report_1", "{}")
        clock.advance(11)

        assert await kv.list_keys("processing_run_") == ["processing_run_a"]

    @pytest.mark.asyncio
    async def test_get_json_returns_default_for_invalid_json(self, kv):
        await kv.put("processing_stats", "not json")
        assert await kv.get_json("processing_stats", default={}) == {}

    @pytest.mark.asyncio
    async def test_put_json_round_trip(self):
        store = InMemoryKeyValueStore()
        await store.put_json("article_titles_cache", ["a", "b"])
        assert await store.get_json("article_titles_cache") == ["a", "b"]


class TestSqlKeyValueStore:
    @pytest.mark.asyncio
    async def test_put_overwrites_existing_value(self, sql_kv):
        await sql_kv.put("gnews_usage_2024-01-01", '{"calls_used": 1}')
        await sql_kv.put("gnews_usage_2024-01-01", '{"calls_used": 2}')

        assert await sql_kv.get_json("gnews_usage_2024-01-01") == {"calls_used": 2}

    @pytest.mark.asyncio
    async def test_expired_rows_read_as_absent(self, sql_kv, clock):
        await sql_kv.put("gnews_query_abc_2024-01-01", "[]", ttl_seconds=3600)
        clock.advance(3601)

        assert await sql_kv.get("gnews_query_abc_2024-01-01") is None

    @pytest.mark.asyncio
    async def test_list_keys_skips_expired(self, sql_kv, clock):
        await sql_kv.put("processing_run_1", "{}")
        await sql_kv.put("processing_run_2", "{}", ttl_seconds=5)
        await sql_kv.put("recent_processing_runs", "[]")
        clock.advance(6)

        assert await sql_kv.list_keys("processing_run_") == ["processing_run_1"]

    @pytest.mark.asyncio
    async def test_delete(self, sql_kv):
        await sql_kv.put("pipeline_run_lock", "run_1")
        await sql_kv.delete("pipeline_run_lock")

        assert await sql_kv.get("pipeline_run_lock") is None

    @pytest.mark.asyncio
    async def test_purge_expired_removes_only_expired_rows(self, sql_kv, clock):
        await sql_kv.put("keep", "1")
        await sql_kv.put("drop_a", "1", ttl_seconds=1)
        await sql_kv.put("drop_b", "1", ttl_seconds=1)
        clock.advance(2)

        assert sql_kv.purge_expired() == 2
        assert await sql_kv.get("keep") == "1"
