"""Tests for the connection test engine + result store."""

from __future__ import annotations

import asyncio
import socket
import sqlite3
import time
from datetime import datetime, timezone
from pathlib import Path
from unittest.mock import MagicMock, patch

import httpx
import psycopg2
import pytest
import redis

from cams.applications.registry import DatabaseConnection, DatabaseType
from cams.health.engine import (
    FailureKind,
    ProbeRunner,
    RunResult,
    TestResult,
    classify_exception,
    execute_probe,
    probe_github,
    probe_http,
    probe_postgres,
    probe_sqlite,
    probe_tcp,
    sanitize,
)
from cams.health.store import ResultStore
from cams.schedules.store import RunStatus, Schedule, ScheduleStore

STARTED = datetime(2025, 1, 1, tzinfo=timezone.utc)


def _conn(type_: DatabaseType, **kw) -> DatabaseConnection:
    return DatabaseConnection(id=kw.pop("id", "c1"), name="test", type=type_, **kw)


def _result(connection_id: str = "c1", success: bool = True, ts: str = "") -> TestResult:
    return TestResult(
        application_id="a1", connection_id=connection_id, connection_type="postgresql",
        success=success, latency_ms=5.0,
        error=None if success else FailureKind.NETWORK_ERROR,
        timestamp=ts,
    )


# ── TestResult / RunResult ───────────────────────────────────────────────────


class TestResults:
    def test_auto_timestamp(self) -> None:
        r = _result()
        assert "T" in r.timestamp

    def test_to_dict(self) -> None:
        d = _result(success=False).to_dict()
        assert d["success"] is False
        assert d["error"] == "network_error"

    def test_run_skipped_without_connections(self) -> None:
        run = RunResult.from_results("a1", [], 1.0, STARTED)
        assert run.status == RunStatus.SKIPPED
        assert "No active" in run.message

    @pytest.mark.parametrize("outcomes,status", [
        ([True, True], RunStatus.PASS),
        ([False, False], RunStatus.FAIL),
        ([True, False], RunStatus.PARTIAL),
    ])
    def test_run_status(self, outcomes: list[bool], status: RunStatus) -> None:
        results = [_result(f"c{i}", ok) for i, ok in enumerate(outcomes)]
        run = RunResult.from_results("a1", results, 1.0, STARTED)
        assert run.status == status
        assert f"Tested {len(outcomes)} connections" in run.message


# ── Classification / sanitizing ──────────────────────────────────────────────


class TestClassify:
    def test_timeout(self) -> None:
        assert classify_exception(TimeoutError()) == (FailureKind.TIMEOUT, "TIMEOUT")
        assert classify_exception(httpx.ConnectTimeout("slow"))[0] == FailureKind.TIMEOUT

    def test_network(self) -> None:
        assert classify_exception(ConnectionRefusedError())[0] == FailureKind.NETWORK_ERROR
        assert classify_exception(socket.gaierror("no such host"))[0] == FailureKind.NETWORK_ERROR
        assert classify_exception(httpx.ConnectError("refused"))[0] == FailureKind.NETWORK_ERROR

    def test_postgres_auth(self) -> None:
        exc = psycopg2.OperationalError('FATAL:  password authentication failed for user "probe"')
        assert classify_exception(exc, DatabaseType.POSTGRESQL)[0] == FailureKind.AUTH_FAILURE

    def test_postgres_timeout(self) -> None:
        exc = psycopg2.OperationalError("timeout expired")
        assert classify_exception(exc, DatabaseType.POSTGRESQL) == (FailureKind.TIMEOUT, "TIMEOUT")

    def test_redis_auth(self) -> None:
        exc = redis.exceptions.AuthenticationError("invalid password")
        assert classify_exception(exc, DatabaseType.REDIS) == (FailureKind.AUTH_FAILURE, "REDIS_AUTH")

    def test_unknown(self) -> None:
        assert classify_exception(ValueError("odd"), DatabaseType.MYSQL) == (FailureKind.UNKNOWN, "MYSQL_ERROR")

    def test_sanitize(self) -> None:
        assert sanitize("Server=x;Password=hunter2;User=sa") == "Server=x;password=***;User=sa"
        assert sanitize("failed for postgres://probe:hunter2@db/billing") == "failed for postgres://probe:***@db/billing"
        assert "abc123" not in sanitize("api_key=abc123")


# ── Probes ───────────────────────────────────────────────────────────────────


class TestTCPProbe:
    def test_open_port(self) -> None:
        server = socket.socket()
        server.bind(("127.0.0.1", 0))
        server.listen(1)
        port = server.getsockname()[1]
        try:
            result = probe_tcp(_conn(DatabaseType.MYSQL, server="127.0.0.1", port=port), timeout_s=2)
        finally:
            server.close()
        assert result.success
        assert result.details == {"host": "127.0.0.1", "port": port}

    def test_closed_port(self) -> None:
        server = socket.socket()
        server.bind(("127.0.0.1", 0))
        port = server.getsockname()[1]
        server.close()
        result = probe_tcp(_conn(DatabaseType.SQLSERVER, server=f"127.0.0.1,{port}"), timeout_s=2)
        assert not result.success
        assert result.error == FailureKind.NETWORK_ERROR

    def test_missing_server(self) -> None:
        result = probe_tcp(_conn(DatabaseType.ORACLE), timeout_s=1)
        assert result.error_code == "INVALID_CONFIG"


class TestSQLiteProbe:
    def test_existing_file(self, tmp_path: Path) -> None:
        db = tmp_path / "app.db"
        sqlite3.connect(db).close()
        result = probe_sqlite(_conn(DatabaseType.SQLITE, database=str(db)))
        assert result.success
        assert "sqlite_version" in result.details

    def test_missing_file(self, tmp_path: Path) -> None:
        result = probe_sqlite(_conn(DatabaseType.SQLITE, database=str(tmp_path / "nope.db")))
        assert not result.success
        assert result.error == FailureKind.NETWORK_ERROR
        assert result.error_code == "SQLITE_CANTOPEN"


class TestPostgresProbe:
    @patch("cams.health.engine.psycopg2.connect")
    def test_success(self, mock_connect: MagicMock) -> None:
        cursor = mock_connect.return_value.cursor.return_value.__enter__.return_value
        cursor.fetchone.return_value = ("PostgreSQL 16.2",)

        result = probe_postgres(_conn(DatabaseType.POSTGRESQL, server="db", database="billing"))
        assert result.success
        assert result.details == {"server_version": "PostgreSQL 16.2"}
        assert mock_connect.call_args.kwargs["connect_timeout"] == 10
        mock_connect.return_value.close.assert_called_once()

    @patch("cams.health.engine.psycopg2.connect")
    def test_auth_failure(self, mock_connect: MagicMock) -> None:
        mock_connect.side_effect = psycopg2.OperationalError(
            'connection to server failed: FATAL:  password authentication failed for user "probe"'
        )
        result = probe_postgres(_conn(DatabaseType.POSTGRESQL, server="db", password="s3cret"))
        assert not result.success
        assert result.error == FailureKind.AUTH_FAILURE
        assert result.message.startswith("PostgreSQL connection failed")


class TestHTTPProbe:
    @patch("cams.health.engine.httpx.Client")
    def test_success(self, mock_client_cls: MagicMock) -> None:
        client = mock_client_cls.return_value.__enter__.return_value
        client.get.return_value = httpx.Response(200)
        result = probe_http(_conn(DatabaseType.REST_API, api_base_url="https://api.internal/health"))
        assert result.success
        client.get.assert_called_once_with("https://api.internal/health")

    @patch("cams.health.engine.httpx.Client")
    def test_graphql_posts_query(self, mock_client_cls: MagicMock) -> None:
        client = mock_client_cls.return_value.__enter__.return_value
        client.post.return_value = httpx.Response(200)
        result = probe_http(_conn(DatabaseType.GRAPHQL, api_base_url="https://api.internal/graphql"))
        assert result.success
        assert client.post.call_args.kwargs["json"] == {"query": "{ __typename }"}

    @patch("cams.health.engine.httpx.Client")
    def test_unauthorized(self, mock_client_cls: MagicMock) -> None:
        client = mock_client_cls.return_value.__enter__.return_value
        client.get.return_value = httpx.Response(401)
        result = probe_http(_conn(DatabaseType.REST_API, api_base_url="https://api.internal"))
        assert result.error == FailureKind.AUTH_FAILURE
        assert result.error_code == "HTTP_401"

    @patch("cams.health.engine.httpx.Client")
    def test_timeout(self, mock_client_cls: MagicMock) -> None:
        client = mock_client_cls.return_value.__enter__.return_value
        client.get.side_effect = httpx.ReadTimeout("slow")
        result = probe_http(_conn(DatabaseType.REST_API, api_base_url="https://api.internal"))
        assert result.error == FailureKind.TIMEOUT

    def test_missing_url(self) -> None:
        result = probe_http(_conn(DatabaseType.REST_API))
        assert result.error_code == "INVALID_CONFIG"


class TestGitHubProbe:
    def test_no_token(self) -> None:
        result = probe_github(_conn(DatabaseType.GITHUB_API))
        assert result.error == FailureKind.AUTH_FAILURE
        assert result.error_code == "GITHUB_NO_TOKEN"

    @patch("cams.health.engine.httpx.Client")
    def test_success(self, mock_client_cls: MagicMock) -> None:
        client = mock_client_cls.return_value.__enter__.return_value
        client.get.return_value = httpx.Response(200, headers={"X-RateLimit-Remaining": "4999"})
        result = probe_github(_conn(DatabaseType.GITHUB_API, api_key="ghp_x"))
        assert result.success
        assert result.details["rate_limit_remaining"] == "4999"
        client.get.assert_called_once_with("https://api.github.com/user")

    @patch("cams.health.engine.httpx.Client")
    def test_forbidden(self, mock_client_cls: MagicMock) -> None:
        client = mock_client_cls.return_value.__enter__.return_value
        client.get.return_value = httpx.Response(403)
        result = probe_github(_conn(DatabaseType.GITHUB_API, api_key="ghp_x"))
        assert result.error == FailureKind.AUTH_FAILURE
        assert result.error_code == "GITHUB_FORBIDDEN"


# ── execute_probe / ProbeRunner ──────────────────────────────────────────────


class TestExecuteProbe:
    def test_tags_result(self, tmp_path: Path) -> None:
        db = tmp_path / "app.db"
        sqlite3.connect(db).close()
        result = execute_probe(_conn(DatabaseType.SQLITE, id="lite", database=str(db)), "my-app")
        assert result.application_id == "my-app"
        assert result.connection_id == "lite"

    def test_unsupported_type(self) -> None:
        with patch.dict("cams.health.engine.PROBES", {}, clear=True):
            result = execute_probe(_conn(DatabaseType.REDIS), "a1")
        assert not result.success
        assert result.error_code == "UNSUPPORTED_TYPE"

    def test_crashing_probe_becomes_result(self) -> None:
        def boom(conn, timeout_s):
            raise RuntimeError("driver exploded")

        with patch.dict("cams.health.engine.PROBES", {DatabaseType.REDIS: boom}):
            result = execute_probe(_conn(DatabaseType.REDIS), "a1")
        assert not result.success
        assert result.error == FailureKind.UNKNOWN
        assert "driver exploded" in result.message


class TestProbeRunner:
    def test_timeout_is_classified(self) -> None:
        def slow(conn, application_id, timeout_s):
            time.sleep(0.5)
            return _result()

        runner = ProbeRunner(timeout_s=0.05)
        with patch("cams.health.engine.execute_probe", slow):
            t0 = time.perf_counter()
            result = asyncio.run(runner.run(_conn(DatabaseType.REDIS), "a1"))
            waited = time.perf_counter() - t0
        assert result.error == FailureKind.TIMEOUT
        assert result.error_code == "TIMEOUT"
        assert result.application_id == "a1"
        assert waited < 5

    def test_passes_through(self, tmp_path: Path) -> None:
        db = tmp_path / "app.db"
        sqlite3.connect(db).close()
        result = asyncio.run(ProbeRunner(timeout_s=5).run(_conn(DatabaseType.SQLITE, database=str(db)), "a1"))
        assert result.success


# ── ResultStore (SQLite) ─────────────────────────────────────────────────────


def _run(results: list[TestResult]) -> RunResult:
    return RunResult.from_results("a1", results, 12.0, STARTED)


class TestResultStore:
    def test_record_updates_schedule(self, schedule_store: ScheduleStore, result_store: ResultStore) -> None:
        schedule_store.upsert(Schedule(application_id="a1", cadence="5m"))
        assert result_store.record("a1", _run([_result("c1"), _result("c2", success=False)]))

        s = schedule_store.get("a1")
        assert s.last_result == RunStatus.PARTIAL
        assert s.last_run_at == STARTED
        assert s.last_duration_ms == 12.0

    def test_history_most_recent_first(self, result_store: ResultStore) -> None:
        for i in range(3):
            result_store.record("a1", _run([_result(f"c{i}", ts=f"2025-01-01T00:0{i}:00+00:00")]))
        history = [r.connection_id for r in result_store.history("a1")]
        assert history == ["c2", "c1", "c0"]

    def test_history_bounded(self, result_store: ResultStore) -> None:
        for i in range(8):
            result_store.record("a1", _run([_result(f"c{i}", ts=f"2025-01-01T00:0{i}:00+00:00")]))
        history = list(result_store.history("a1"))
        assert len(history) == 5  # fixture history_limit
        assert history[0].connection_id == "c7"
        assert history[-1].connection_id == "c3"

    def test_history_is_restartable(self, result_store: ResultStore) -> None:
        result_store.record("a1", _run([_result("c0", ts="2025-01-01T00:00:00+00:00")]))
        history = result_store.history("a1")
        assert len(list(history)) == 1
        assert len(list(history)) == 1

        result_store.record("a1", _run([_result("c1", ts="2025-01-01T00:01:00+00:00")]))
        assert [r.connection_id for r in history] == ["c1", "c0"]

    def test_history_is_lazy(self, result_store: ResultStore) -> None:
        result_store.record("a1", _run([_result("c0"), _result("c1")]))
        it = iter(result_store.history("a1"))
        first = next(it)
        assert isinstance(first, TestResult)
        it.close()

    def test_history_limit_argument(self, result_store: ResultStore) -> None:
        result_store.record("a1", _run([_result("c0"), _result("c1"), _result("c2")]))
        assert len(list(result_store.history("a1", limit=2))) == 2

    def test_history_per_application(self, result_store: ResultStore) -> None:
        result_store.record("a1", _run([_result("c0")]))
        assert list(result_store.history("other")) == []

    def test_latest_by_connection(self, result_store: ResultStore) -> None:
        result_store.record("a1", _run([_result("c1"), _result("c2", success=False)]))
        result_store.record("a1", _run([_result("c2")]))
        latest = result_store.latest_by_connection("a1")
        assert set(latest) == {"c1", "c2"}
        assert latest["c2"]["success"] is True

    def test_success_rate(self, result_store: ResultStore) -> None:
        assert result_store.success_rate("a1") == 100.0  # no data = assume up
        result_store.record("a1", _run([_result("c1"), _result("c2", success=False)]))
        assert result_store.success_rate("a1") == 50.0

    def test_retry_once_on_persistence_failure(
        self, schedule_store: ScheduleStore, result_store: ResultStore,
    ) -> None:
        with patch.object(schedule_store, "record_run",
                          side_effect=[sqlite3.OperationalError("database is locked"), True]):
            assert result_store.record("a1", _run([_result()])) is True
        assert "a1" not in result_store.stale

    def test_repeated_failure_marks_stale(
        self, schedule_store: ScheduleStore, result_store: ResultStore,
    ) -> None:
        with patch.object(schedule_store, "record_run",
                          side_effect=sqlite3.OperationalError("database is locked")) as mock_record:
            assert result_store.record("a1", _run([_result()])) is False
        assert mock_record.call_count == 2
        assert result_store.stale == {"a1"}

        assert result_store.record("a1", _run([_result()])) is True
        assert result_store.stale == set()

    def test_clear(self, result_store: ResultStore) -> None:
        result_store.record("a1", _run([_result("c0"), _result("c1")]))
        assert result_store.clear("a1") == 2
        assert list(result_store.history("a1")) == []

    def test_close_and_reopen(self, result_store: ResultStore) -> None:
        result_store.close()
        result_store.record("a1", _run([_result()]))
        assert len(list(result_store.history("a1"))) == 1
