# tests/test_infrastructure.py
"""Tests for config, logging, metrics, database helpers and repositories"""
import asyncio
import json
import logging
from unittest.mock import AsyncMock, MagicMock, patch

import asyncpg
import pytest

from chatpush.bootstrap import build_container, build_push_provider
from chatpush.config import Settings, warn_on_risky_config
from chatpush.infra.db_resilience_async import _acquire_with_retry, is_transient_error
from chatpush.infra.health_checks_async import (
    AsyncDatabaseHealthCheck,
    AsyncHealthChecker,
    AsyncJobQueueHealthCheck,
    HealthStatus,
)
from chatpush.infra.logging_config import ConsoleFormatter, JSONFormatter, LogContext, mask_token
from chatpush.infra.metrics import MetricsCollector, Timer, get_metrics_collector, inc_counter, metric_key
from chatpush.infra.migrations_async import apply_migrations, list_migrations
from chatpush.infra.pg_community_repo_async import AsyncPostgresCommunityStore
from chatpush.infra.pg_message_repo_async import AsyncPostgresMessageStore
from chatpush.infra.pg_user_repo_async import AsyncPostgresUserStore

from tests.fakes import FakePushProvider, InMemoryCommunityStore, InMemoryMessageStore, InMemoryUserTokenStore


def _patch_conn(module: str, mock_conn):
    ctx = patch(f"{module}.safe_db_conn")
    mock_ctx = ctx.start()
    mock_ctx.return_value.__aenter__ = AsyncMock(return_value=mock_conn)
    mock_ctx.return_value.__aexit__ = AsyncMock(return_value=False)
    return ctx


# ---------------------------------------------------------------------------
# Config
# ---------------------------------------------------------------------------

class TestSettings:
    def test_dsn_from_parts(self):
        s = Settings(pguser="bot", pgpassword="pw", pghost="db", pgport=5433, pgdatabase="chat", _env_file=None)
        assert s.database_dsn == "postgresql://bot:pw@db:5433/chat"

    def test_database_url_wins(self):
        s = Settings(database_url="postgresql://x@y/z", _env_file=None)
        assert s.database_dsn == "postgresql://x@y/z"

    def test_fcm_enabled(self):
        assert not Settings(_env_file=None).fcm_enabled
        assert Settings(fcm_project_id="p", google_credentials_file="/k.json", _env_file=None).fcm_enabled

    def test_production_requirements(self):
        s = Settings(app_env="prod", _env_file=None)
        missing = s.validate_required_for_production()
        assert "api_token" in missing
        assert "fcm_project_id" in missing

    def test_dev_has_no_requirements(self):
        assert Settings(app_env="dev", _env_file=None).validate_required_for_production() == []

    def test_risky_config_warnings(self):
        warnings = warn_on_risky_config(Settings(dispatch_max_concurrency=0, _env_file=None))
        assert any("api_token" in w for w in warnings)
        assert any("dispatch_max_concurrency" in w for w in warnings)


# ---------------------------------------------------------------------------
# Logging & metrics
# ---------------------------------------------------------------------------

class TestLogging:
    def test_mask_token(self):
        token = "fGh1234567890abcdefghijklmnop"
        assert mask_token(token) == token[:20] + "..."
        assert mask_token("short") == "short"
        assert mask_token(None) == "***"

    def test_json_formatter_includes_context(self):
        record = logging.LogRecord("chatpush.test", logging.INFO, __file__, 1, "hello", None, None)
        record.message_id = "m1"
        record.job_id = "j1"

        data = json.loads(JSONFormatter().format(record))

        assert data["message"] == "hello"
        assert data["message_id"] == "m1"
        assert data["job_id"] == "j1"

    def test_log_context_adds_extras(self):
        logger = MagicMock()
        LogContext(logger, message_id="m1", community_id=None).info("hi")

        _, kwargs = logger.log.call_args
        assert kwargs["extra"] == {"message_id": "m1"}

    def test_log_context_keeps_call_extras(self):
        logger = MagicMock()
        LogContext(logger, job_id="j1").warning("retry", extra={"caller": "svc"})

        _, kwargs = logger.log.call_args
        assert kwargs["extra"] == {"caller": "svc", "job_id": "j1"}

    def test_console_formatter_shortens_ids(self):
        record = logging.LogRecord("chatpush.test", logging.INFO, __file__, 1, "hello", None, None)
        record.job_id = "aaaaaaaa-bbbb-cccc"
        record.message_id = "m1"

        line = ConsoleFormatter().format(record)

        assert "[msg=m1 job=aaaaaaaa]" in line
        assert line.endswith("chatpush.test [msg=m1 job=aaaaaaaa] - hello")


class TestMetrics:
    def test_counter_labels(self):
        inc_counter("things", kind="a")
        inc_counter("things", kind="a")
        assert get_metrics_collector().get_metrics()["counters"]["things{kind=a}"] == 2

    def test_timer_records_histogram(self):
        with Timer("op_seconds", path="x"):
            pass
        stats = get_metrics_collector().get_metrics()["histograms"]["op_seconds{path=x}"]
        assert stats["count"] == 1

    def test_histogram_keeps_recent_window(self):
        collector = MetricsCollector(window=3)
        for value in (1.0, 2.0, 3.0, 4.0, 5.0):
            collector.observe_histogram("lat", value)

        stats = collector.get_metrics()["histograms"]["lat"]
        assert stats["count"] == 3
        assert stats["min"] == 3.0
        assert stats["max"] == 5.0

    def test_metric_key_sorts_labels(self):
        assert metric_key("sends", {"status": "sent", "path": "direct"}) == "sends{path=direct,status=sent}"


# ---------------------------------------------------------------------------
# Database resilience
# ---------------------------------------------------------------------------

class TestDbResilience:
    def test_transient_errors(self):
        assert is_transient_error(ConnectionError("reset"))
        assert is_transient_error(asyncio.TimeoutError())
        assert is_transient_error(asyncpg.TooManyConnectionsError("too many"))
        assert not is_transient_error(ValueError("bad input"))

    @pytest.mark.asyncio
    async def test_acquire_retries_transient(self):
        pool = MagicMock()
        conn = object()
        pool.acquire = AsyncMock(side_effect=[ConnectionError("reset"), conn])

        with patch("chatpush.infra.db_resilience_async.asyncio.sleep", new=AsyncMock()):
            result = await _acquire_with_retry(pool, max_retries=3)

        assert result is conn
        assert pool.acquire.await_count == 2

    @pytest.mark.asyncio
    async def test_acquire_gives_up(self):
        pool = MagicMock()
        pool.acquire = AsyncMock(side_effect=ConnectionError("reset"))

        with patch("chatpush.infra.db_resilience_async.asyncio.sleep", new=AsyncMock()):
            with pytest.raises(ConnectionError):
                await _acquire_with_retry(pool, max_retries=2)

        assert pool.acquire.await_count == 3

    @pytest.mark.asyncio
    async def test_non_transient_not_retried(self):
        pool = MagicMock()
        pool.acquire = AsyncMock(side_effect=ValueError("nope"))

        with pytest.raises(ValueError):
            await _acquire_with_retry(pool, max_retries=3)

        assert pool.acquire.await_count == 1


# ---------------------------------------------------------------------------
# Repositories
# ---------------------------------------------------------------------------

class TestCommunityStore:
    @pytest.mark.asyncio
    async def test_get_community(self):
        mock_conn = AsyncMock()
        mock_conn.fetchrow = AsyncMock(return_value={"id": "c1", "name": "Hikers", "members": ["u1", "u2"]})
        ctx = _patch_conn("chatpush.infra.pg_community_repo_async", mock_conn)
        try:
            community = await AsyncPostgresCommunityStore().get_community("c1")
        finally:
            ctx.stop()

        assert community.name == "Hikers"
        assert community.members == ["u1", "u2"]
        assert mock_conn.fetchrow.call_args[0][1] == "c1"

    @pytest.mark.asyncio
    async def test_missing_community(self):
        mock_conn = AsyncMock()
        mock_conn.fetchrow = AsyncMock(return_value=None)
        ctx = _patch_conn("chatpush.infra.pg_community_repo_async", mock_conn)
        try:
            assert await AsyncPostgresCommunityStore().get_community("nope") is None
        finally:
            ctx.stop()

    @pytest.mark.asyncio
    async def test_null_members(self):
        mock_conn = AsyncMock()
        mock_conn.fetchrow = AsyncMock(return_value={"id": "c1", "name": None, "members": None})
        ctx = _patch_conn("chatpush.infra.pg_community_repo_async", mock_conn)
        try:
            community = await AsyncPostgresCommunityStore().get_community("c1")
        finally:
            ctx.stop()

        assert community.members == []
        assert community.name == ""

    @pytest.mark.asyncio
    async def test_database_error_counted_and_raised(self):
        mock_conn = AsyncMock()
        mock_conn.fetchrow = AsyncMock(side_effect=ConnectionError("db down"))
        ctx = _patch_conn("chatpush.infra.pg_community_repo_async", mock_conn)
        try:
            with pytest.raises(ConnectionError):
                await AsyncPostgresCommunityStore().get_community("c1")
        finally:
            ctx.stop()

        counters = get_metrics_collector().get_metrics()["counters"]
        assert counters["database_errors_total{operation=community_get}"] == 1


class TestUserStore:
    @pytest.mark.asyncio
    async def test_get_tokens_uses_any(self):
        mock_conn = AsyncMock()
        mock_conn.fetch = AsyncMock(return_value=[{"id": "u2", "fcm_token": "tok-u2"}])
        ctx = _patch_conn("chatpush.infra.pg_user_repo_async", mock_conn)
        try:
            tokens = await AsyncPostgresUserStore().get_tokens(["u2", "u3"])
        finally:
            ctx.stop()

        assert tokens == {"u2": "tok-u2"}
        sql, ids = mock_conn.fetch.call_args[0]
        assert "ANY($1::text[])" in sql
        assert ids == ["u2", "u3"]

    @pytest.mark.asyncio
    async def test_empty_ids_skip_query(self):
        with patch("chatpush.infra.pg_user_repo_async.safe_db_conn") as mock_ctx:
            assert await AsyncPostgresUserStore().get_tokens([]) == {}
        mock_ctx.assert_not_called()


class TestMessageStore:
    @pytest.mark.asyncio
    async def test_mark_notified(self):
        mock_conn = AsyncMock()
        mock_conn.execute = AsyncMock(return_value="UPDATE 1")
        ctx = _patch_conn("chatpush.infra.pg_message_repo_async", mock_conn)
        try:
            await AsyncPostgresMessageStore().mark_notified("m1", 3)
        finally:
            ctx.stop()

        sql, message_id, recipients = mock_conn.execute.call_args[0]
        assert "notification_sent = true" in sql
        assert "notification_sent_at = now()" in sql
        assert (message_id, recipients) == ("m1", 3)

    @pytest.mark.asyncio
    async def test_mark_notified_error_raised(self):
        mock_conn = AsyncMock()
        mock_conn.execute = AsyncMock(side_effect=ConnectionError("db down"))
        ctx = _patch_conn("chatpush.infra.pg_message_repo_async", mock_conn)
        try:
            with pytest.raises(ConnectionError):
                await AsyncPostgresMessageStore().mark_notified("m1", 3)
        finally:
            ctx.stop()


# ---------------------------------------------------------------------------
# Migrations, health, wiring
# ---------------------------------------------------------------------------

class TestMigrations:
    def test_init_migration_has_trigger(self):
        files = list_migrations()
        assert files[0].name == "001_init.sql"

        sql = files[0].read_text(encoding="utf-8")
        assert "CREATE TABLE IF NOT EXISTS jobs" in sql
        assert "AFTER INSERT ON messages" in sql
        assert "'chat_message_created'" in sql

    @pytest.mark.asyncio
    async def test_apply_skips_recorded_migrations(self):
        names = [p.name for p in list_migrations()]
        mock_conn = AsyncMock()
        mock_conn.fetch = AsyncMock(return_value=[{"version": names[0]}])
        ctx = _patch_conn("chatpush.infra.migrations_async", mock_conn)
        try:
            result = await apply_migrations()
        finally:
            ctx.stop()

        assert result == {"ok": True, "applied": names[1:], "count": len(names) - 1}
        recorded = [c.args[1] for c in mock_conn.execute.call_args_list if "INSERT INTO" in c.args[0]]
        assert recorded == names[1:]


class TestHealthChecks:
    @pytest.mark.asyncio
    async def test_job_queue_healthy(self):
        repo = MagicMock()
        repo.count_by_status = AsyncMock(return_value={"pending": 2, "completed": 50})

        result = await AsyncJobQueueHealthCheck(repo).check()

        assert result["status"] == HealthStatus.HEALTHY
        assert result["jobs"]["pending"] == 2

    @pytest.mark.asyncio
    async def test_job_backlog_degrades(self):
        repo = MagicMock()
        repo.count_by_status = AsyncMock(return_value={"pending": 5000})

        checker = AsyncHealthChecker([AsyncJobQueueHealthCheck(repo, backlog_threshold=100)])
        result = await checker.run_checks()

        assert result["status"] == "degraded"

    @pytest.mark.asyncio
    async def test_non_critical_skipped(self):
        repo = MagicMock()
        repo.count_by_status = AsyncMock(side_effect=ConnectionError("db down"))

        checker = AsyncHealthChecker([AsyncJobQueueHealthCheck(repo)])
        result = await checker.run_checks(include_non_critical=False)

        assert result["status"] == "healthy"
        assert result["checks"] == {}

    @pytest.mark.asyncio
    async def test_missing_table_makes_database_unhealthy(self):
        conn = MagicMock()
        conn.fetchval = AsyncMock(return_value=["jobs"])
        pool = MagicMock()
        pool.acquire.return_value.__aenter__ = AsyncMock(return_value=conn)
        pool.acquire.return_value.__aexit__ = AsyncMock(return_value=False)

        with patch("chatpush.infra.health_checks_async.get_pool", AsyncMock(return_value=pool)):
            result = await AsyncHealthChecker([AsyncDatabaseHealthCheck()]).run_checks()

        assert result["status"] == "unhealthy"
        assert result["checks"]["database"]["error"] == "jobs"

    @pytest.mark.asyncio
    async def test_unreachable_database_is_unhealthy(self):
        with patch(
            "chatpush.infra.health_checks_async.get_pool",
            AsyncMock(side_effect=RuntimeError("Database pool is not initialized")),
        ):
            result = await AsyncDatabaseHealthCheck().check()

        assert result["status"] == HealthStatus.UNHEALTHY
        assert "not initialized" in result["error"]


class TestBootstrap:
    def test_build_container_with_fakes(self):
        s = Settings(token_lookup_batch_size=50, dispatch_max_concurrency=7, _env_file=None)
        container = build_container(
            s,
            provider=FakePushProvider(),
            communities=InMemoryCommunityStore(),
            users=InMemoryUserTokenStore(),
            messages=InMemoryMessageStore(),
        )

        assert container.tokens._batch_size == 50
        assert container.dispatcher._max_concurrency == 7
        assert container.chat_handler is not None
        assert container.direct_handler is not None

    @pytest.mark.asyncio
    async def test_push_provider_without_fcm_fails_each_send(self):
        from chatpush.core.errors import DeliveryFailure
        from chatpush.infra.fcm_sender import UnconfiguredPushProvider

        provider = build_push_provider(Settings(_env_file=None))

        assert isinstance(provider, UnconfiguredPushProvider)
        with pytest.raises(DeliveryFailure) as exc_info:
            await provider.send("tok", {"notification": {"title": "T", "body": "B"}})
        assert exc_info.value.error_code == "NOT_CONFIGURED"
        assert not exc_info.value.retryable

    def test_fcm_warning_matches_degraded_startup(self):
        warnings = warn_on_risky_config(Settings(_env_file=None))
        assert any("service runs but every send will fail" in w for w in warnings)

    def test_push_provider_from_settings(self):
        from chatpush.infra.fcm_sender import FcmSender

        s = Settings(fcm_project_id="demo", google_credentials_json="{}", _env_file=None)
        assert isinstance(build_push_provider(s), FcmSender)
