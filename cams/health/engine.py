"""Connection test engine: probes a database or API connection.

Supports: PostgreSQL (psycopg2), SQLite, Redis, REST/GraphQL APIs and the
GitHub API (httpx). SQL Server, MySQL, Oracle and MongoDB get a TCP
reachability probe against their server port.

Every probe returns a TestResult; failures are values, never raised.
"""

from __future__ import annotations

import asyncio
import logging
import re
import socket
import sqlite3
import time
from collections.abc import Callable
from concurrent.futures import Executor
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

import httpx
import psycopg2
import redis

from ..applications.registry import DatabaseConnection, DatabaseType
from ..schedules.store import RunStatus, utcnow

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_S = 10.0
GITHUB_API_URL = "https://api.github.com"
USER_AGENT = "CAMS-Application"


# ── Models ───────────────────────────────────────────────────────────────────


class FailureKind(str, Enum):
    TIMEOUT = "timeout"
    AUTH_FAILURE = "auth_failure"
    NETWORK_ERROR = "network_error"
    UNKNOWN = "unknown"


@dataclass
class TestResult:
    """Result of a single connection probe."""

    __test__ = False  # not a pytest class

    connection_id: str
    connection_type: str
    success: bool
    latency_ms: float
    error: FailureKind | None = None
    error_code: str | None = None
    message: str = ""
    details: dict[str, Any] | None = None
    application_id: str = ""
    timestamp: str = ""

    def __post_init__(self) -> None:
        if not self.timestamp:
            self.timestamp = datetime.now(timezone.utc).isoformat()

    def to_dict(self) -> dict[str, Any]:
        return {
            "application_id": self.application_id,
            "connection_id": self.connection_id,
            "connection_type": self.connection_type,
            "success": self.success,
            "latency_ms": self.latency_ms,
            "error": self.error.value if self.error else None,
            "error_code": self.error_code,
            "message": self.message,
            "details": self.details,
            "timestamp": self.timestamp,
        }


@dataclass
class RunResult:
    """Outcome of one schedule run across all active connections of an application."""

    application_id: str
    status: RunStatus
    message: str
    duration_ms: float
    results: list[TestResult] = field(default_factory=list)
    started_at: datetime = field(default_factory=utcnow)

    @classmethod
    def from_results(
        cls, application_id: str, results: list[TestResult], duration_ms: float, started_at: datetime,
    ) -> "RunResult":
        if not results:
            return cls(application_id, RunStatus.SKIPPED, "No active database connections found",
                       duration_ms, [], started_at)
        passed = sum(1 for r in results if r.success)
        failed = len(results) - passed
        if failed == 0:
            status = RunStatus.PASS
        elif passed == 0:
            status = RunStatus.FAIL
        else:
            status = RunStatus.PARTIAL
        message = f"Tested {len(results)} connections: {passed} successful, {failed} failed"
        return cls(application_id, status, message, duration_ms, results, started_at)

    def to_dict(self) -> dict[str, Any]:
        return {
            "application_id": self.application_id,
            "status": self.status.value,
            "message": self.message,
            "duration_ms": self.duration_ms,
            "started_at": self.started_at.isoformat(),
            "results": [r.to_dict() for r in self.results],
        }


# ── Helpers ──────────────────────────────────────────────────────────────────

_SECRET_PATTERNS = (
    (re.compile(r"(password|pwd|pass)=[^;\s]+", re.IGNORECASE), "password=***"),
    (re.compile(r"(apikey|api_key|key|token)=[^;\s]+", re.IGNORECASE), "apikey=***"),
    (re.compile(r"://([^:/@\s]+):([^@\s]+)@"), r"://\1:***@"),
)

_PG_AUTH_CODES = {"28P01", "28000"}


def sanitize(message: str) -> str:
    """Strip credentials from driver error messages."""
    for pattern, replacement in _SECRET_PATTERNS:
        message = pattern.sub(replacement, message)
    return message.strip()


def _elapsed_ms(t0: float) -> float:
    return round((time.perf_counter() - t0) * 1000, 1)


def _ok(conn: DatabaseConnection, t0: float, message: str, details: dict[str, Any] | None = None) -> TestResult:
    return TestResult(
        connection_id=conn.id, connection_type=conn.type.value,
        success=True, latency_ms=_elapsed_ms(t0), message=message, details=details,
    )


def _fail(
    conn: DatabaseConnection,
    t0: float,
    kind: FailureKind,
    code: str,
    message: str,
    details: dict[str, Any] | None = None,
) -> TestResult:
    return TestResult(
        connection_id=conn.id, connection_type=conn.type.value,
        success=False, latency_ms=_elapsed_ms(t0), error=kind, error_code=code,
        message=sanitize(message), details=details,
    )


def classify_exception(exc: BaseException, db_type: DatabaseType | None = None) -> tuple[FailureKind, str]:
    """Map a driver exception to (failure kind, error code)."""
    text = str(exc).lower()
    prefix = db_type.value.upper() if db_type else "CONNECTION"

    if isinstance(exc, (TimeoutError, asyncio.TimeoutError, httpx.TimeoutException, redis.exceptions.TimeoutError)):
        return FailureKind.TIMEOUT, "TIMEOUT"
    if isinstance(exc, redis.exceptions.AuthenticationError):
        return FailureKind.AUTH_FAILURE, "REDIS_AUTH"
    if isinstance(exc, redis.exceptions.ResponseError) and "noauth" in text:
        return FailureKind.AUTH_FAILURE, "REDIS_NOAUTH"
    if isinstance(exc, psycopg2.Error):
        pgcode = getattr(exc, "pgcode", None)
        code = f"PG_{pgcode}" if pgcode else "POSTGRESQL_ERROR"
        if pgcode in _PG_AUTH_CODES or "password authentication failed" in text or "no password supplied" in text:
            return FailureKind.AUTH_FAILURE, code
        if "timeout expired" in text:
            return FailureKind.TIMEOUT, "TIMEOUT"
        if "could not connect" in text or "could not translate host name" in text or "connection refused" in text:
            return FailureKind.NETWORK_ERROR, code
        return FailureKind.UNKNOWN, code
    if isinstance(exc, (httpx.NetworkError, redis.exceptions.ConnectionError)):
        return FailureKind.NETWORK_ERROR, "NETWORK"
    if isinstance(exc, PermissionError):
        return FailureKind.AUTH_FAILURE, "UNAUTHORIZED"
    if isinstance(exc, OSError):
        return FailureKind.NETWORK_ERROR, "NETWORK"
    if isinstance(exc, sqlite3.Error):
        if "unable to open" in text:
            return FailureKind.NETWORK_ERROR, "SQLITE_CANTOPEN"
        return FailureKind.UNKNOWN, "SQLITE_ERROR"
    return FailureKind.UNKNOWN, f"{prefix}_ERROR"


def _fail_from(conn: DatabaseConnection, t0: float, exc: BaseException, label: str) -> TestResult:
    kind, code = classify_exception(exc, conn.type)
    return _fail(conn, t0, kind, code, f"{label}: {type(exc).__name__}: {exc}")


def _split_host(server: str, default_port: int | None) -> tuple[str, int | None]:
    """Accept 'host', 'host:port', 'host,port' (SQL Server) and 'host\\instance'."""
    host = server.split("\\", 1)[0].strip()
    for sep in (",", ":"):
        if sep in host:
            name, _, port = host.rpartition(sep)
            if port.isdigit():
                return name, int(port)
    return host, default_port


# ── Probes ───────────────────────────────────────────────────────────────────


def probe_postgres(conn: DatabaseConnection, timeout_s: float = DEFAULT_TIMEOUT_S) -> TestResult:
    """Open a psycopg2 connection and query the server version."""
    t0 = time.perf_counter()
    connect_timeout = max(1, int(round(timeout_s)))
    try:
        if conn.connection_string:
            pg = psycopg2.connect(conn.connection_string, connect_timeout=connect_timeout)
        else:
            host, port = _split_host(conn.server, conn.effective_port)
            pg = psycopg2.connect(
                host=host,
                port=conn.port or port,
                dbname=conn.database or "postgres",
                user=conn.username or None,
                password=conn.password or None,
                connect_timeout=connect_timeout,
            )
        try:
            with pg.cursor() as cur:
                cur.execute("SELECT version();")
                version = cur.fetchone()[0]
        finally:
            pg.close()
        return _ok(conn, t0, "PostgreSQL connection successful", {"server_version": version})
    except Exception as e:
        return _fail_from(conn, t0, e, "PostgreSQL connection failed")


def probe_sqlite(conn: DatabaseConnection, timeout_s: float = DEFAULT_TIMEOUT_S) -> TestResult:
    """Open the database file read-only and query the library version."""
    t0 = time.perf_counter()
    path = conn.database or conn.connection_string
    if not path:
        return _fail(conn, t0, FailureKind.UNKNOWN, "INVALID_CONFIG", "SQLite connection has no database path")
    try:
        db = sqlite3.connect(f"file:{path}?mode=ro", uri=True, timeout=timeout_s)
        try:
            version = db.execute("SELECT sqlite_version()").fetchone()[0]
        finally:
            db.close()
        return _ok(conn, t0, "SQLite connection successful", {"sqlite_version": version})
    except Exception as e:
        return _fail_from(conn, t0, e, "SQLite connection failed")


def probe_redis(conn: DatabaseConnection, timeout_s: float = DEFAULT_TIMEOUT_S) -> TestResult:
    """PING a Redis server."""
    t0 = time.perf_counter()
    try:
        if conn.connection_string:
            client = redis.Redis.from_url(
                conn.connection_string, socket_connect_timeout=timeout_s, socket_timeout=timeout_s,
            )
        else:
            host, port = _split_host(conn.server, conn.effective_port)
            client = redis.Redis(
                host=host,
                port=port or 6379,
                username=conn.username or None,
                password=conn.password or None,
                socket_connect_timeout=timeout_s,
                socket_timeout=timeout_s,
            )
        try:
            client.ping()
        finally:
            client.close()
        return _ok(conn, t0, "Redis connection successful")
    except Exception as e:
        return _fail_from(conn, t0, e, "Redis connection failed")


def probe_tcp(conn: DatabaseConnection, timeout_s: float = DEFAULT_TIMEOUT_S) -> TestResult:
    """Raw TCP connectivity to the server port (engines without a driver)."""
    t0 = time.perf_counter()
    host, port = _split_host(conn.server, conn.effective_port)
    if not host or not port:
        return _fail(conn, t0, FailureKind.UNKNOWN, "INVALID_CONFIG", "Connection has no server/port")
    try:
        sock = socket.create_connection((host, port), timeout=timeout_s)
        sock.close()
        return _ok(conn, t0, f"Port {port} reachable on {host}", {"host": host, "port": port})
    except Exception as e:
        return _fail_from(conn, t0, e, "TCP connect failed")


def _http_status_failure(conn: DatabaseConnection, t0: float, status_code: int, body: str = "") -> TestResult:
    if status_code in (401, 403):
        kind = FailureKind.AUTH_FAILURE
    else:
        kind = FailureKind.UNKNOWN
    details = {"status_code": status_code}
    if body:
        details["body"] = sanitize(body[:500])
    return _fail(conn, t0, kind, f"HTTP_{status_code}", f"Unexpected HTTP status {status_code}", details)


def probe_http(conn: DatabaseConnection, timeout_s: float = DEFAULT_TIMEOUT_S) -> TestResult:
    """GET the API base URL (GraphQL: POST a ``__typename`` query)."""
    t0 = time.perf_counter()
    url = conn.api_base_url or conn.connection_string
    if not url:
        return _fail(conn, t0, FailureKind.UNKNOWN, "INVALID_CONFIG", "API connection has no base URL")

    headers = {"User-Agent": USER_AGENT}
    if conn.api_key:
        headers["Authorization"] = f"Bearer {conn.api_key}"
    try:
        with httpx.Client(timeout=timeout_s, follow_redirects=True, headers=headers) as client:
            if conn.type == DatabaseType.GRAPHQL:
                resp = client.post(url, json={"query": "{ __typename }"})
            else:
                resp = client.get(url)
        if resp.status_code >= 400:
            return _http_status_failure(conn, t0, resp.status_code)
        return _ok(conn, t0, f"{resp.status_code} OK", {"status_code": resp.status_code})
    except Exception as e:
        return _fail_from(conn, t0, e, "API request failed")


def probe_github(conn: DatabaseConnection, timeout_s: float = DEFAULT_TIMEOUT_S) -> TestResult:
    """Authenticate against the GitHub API with the stored token."""
    t0 = time.perf_counter()
    token = conn.api_key or conn.password
    if not token:
        return _fail(conn, t0, FailureKind.AUTH_FAILURE, "GITHUB_NO_TOKEN",
                     "GitHub token is required for authentication")

    base = (conn.api_base_url or GITHUB_API_URL).rstrip("/")
    headers = {"User-Agent": USER_AGENT, "Authorization": f"token {token}"}
    try:
        with httpx.Client(timeout=timeout_s, headers=headers) as client:
            resp = client.get(f"{base}/user")
        if resp.is_success:
            details = {
                "api_endpoint": base,
                "rate_limit_remaining": resp.headers.get("X-RateLimit-Remaining", "unknown"),
                "rate_limit_reset": resp.headers.get("X-RateLimit-Reset", "unknown"),
            }
            return _ok(conn, t0, "GitHub API connection successful", details)

        codes = {401: "GITHUB_UNAUTHORIZED", 403: "GITHUB_FORBIDDEN", 404: "GITHUB_NOT_FOUND"}
        kind = FailureKind.AUTH_FAILURE if resp.status_code in (401, 403) else FailureKind.UNKNOWN
        return _fail(
            conn, t0, kind, codes.get(resp.status_code, f"GITHUB_HTTP_{resp.status_code}"),
            f"GitHub API authentication failed: {resp.status_code}",
            {"status_code": resp.status_code},
        )
    except Exception as e:
        return _fail_from(conn, t0, e, "GitHub API connection failed")


# Dispatcher
PROBES: dict[DatabaseType, Callable[[DatabaseConnection, float], TestResult]] = {
    DatabaseType.POSTGRESQL: probe_postgres,
    DatabaseType.SQLITE: probe_sqlite,
    DatabaseType.REDIS: probe_redis,
    DatabaseType.SQLSERVER: probe_tcp,
    DatabaseType.MYSQL: probe_tcp,
    DatabaseType.ORACLE: probe_tcp,
    DatabaseType.MONGODB: probe_tcp,
    DatabaseType.REST_API: probe_http,
    DatabaseType.GRAPHQL: probe_http,
    DatabaseType.GITHUB_API: probe_github,
}


def execute_probe(
    conn: DatabaseConnection,
    application_id: str = "",
    timeout_s: float = DEFAULT_TIMEOUT_S,
) -> TestResult:
    """Run the probe for a connection's type and tag the result."""
    probe = PROBES.get(conn.type)
    if not probe:
        result = TestResult(
            connection_id=conn.id, connection_type=str(conn.type), success=False,
            latency_ms=0, error=FailureKind.UNKNOWN, error_code="UNSUPPORTED_TYPE",
            message=f"Unsupported connection type: {conn.type}",
        )
    else:
        t0 = time.perf_counter()
        try:
            result = probe(conn, timeout_s)
        except Exception as e:
            logger.exception("Probe crashed for connection %s", conn.id)
            result = _fail_from(conn, t0, e, "Probe error")
    result.application_id = application_id
    return result


class ProbeRunner:
    """Async front for the blocking probes, with a hard per-probe timeout.

    Probes run in ``executor``; a probe still running after ``timeout_s`` is
    abandoned and reported as a timeout. The driver-level timeout handed to
    the probe closes its socket shortly after.
    """

    def __init__(self, timeout_s: float = DEFAULT_TIMEOUT_S, executor: Executor | None = None) -> None:
        self.timeout_s = timeout_s
        self._executor = executor

    async def run(self, conn: DatabaseConnection, application_id: str = "") -> TestResult:
        loop = asyncio.get_running_loop()
        t0 = time.perf_counter()
        try:
            return await asyncio.wait_for(
                loop.run_in_executor(self._executor, execute_probe, conn, application_id, self.timeout_s),
                timeout=self.timeout_s,
            )
        except asyncio.TimeoutError:
            logger.warning("Probe timed out after %.1fs: %s/%s", self.timeout_s, application_id, conn.id)
            result = _fail(conn, t0, FailureKind.TIMEOUT, "TIMEOUT",
                           f"Connection test timed out after {self.timeout_s:g}s")
            result.application_id = application_id
            return result
