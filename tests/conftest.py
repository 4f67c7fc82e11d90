"""Shared test fixtures."""

from __future__ import annotations

import asyncio
from collections import Counter
from pathlib import Path

import pytest
import yaml

from cams.applications.registry import ApplicationRegistry, DatabaseConnection
from cams.health.engine import FailureKind, TestResult
from cams.health.store import ResultStore
from cams.schedules.store import ScheduleStore


@pytest.fixture
def sample_yaml(tmp_path: Path) -> Path:
    """A connections.yaml with two applications."""
    data = {
        "applications": [
            {
                "id": "billing",
                "name": "Billing Service",
                "description": "Invoicing backend",
                "connections": [
                    {
                        "id": "billing-db",
                        "name": "Billing PostgreSQL",
                        "type": "PostgreSQL",
                        "server": "db.internal",
                        "database": "billing",
                        "username": "probe",
                        "password": "s3cret",
                    },
                    {
                        "id": "billing-api",
                        "name": "Billing API",
                        "type": "rest_api",
                        "api_base_url": "https://billing.internal/health",
                    },
                    {
                        "id": "billing-legacy",
                        "name": "Legacy SQL Server",
                        "type": "SqlServer",
                        "server": "legacy.internal,14330",
                        "is_active": False,
                    },
                ],
            },
            {
                "id": "reporting",
                "name": "Reporting",
                "connections": [
                    {"id": "reporting-dw", "name": "DW", "type": "mysql", "server": "dw.internal"},
                ],
            },
            {"id": "empty-app", "name": "No Connections"},
        ]
    }
    yml_path = tmp_path / "connections.yaml"
    yml_path.write_text(yaml.dump(data))
    return yml_path


@pytest.fixture
def registry(sample_yaml: Path) -> ApplicationRegistry:
    reg = ApplicationRegistry(path=sample_yaml)
    reg.load()
    return reg


@pytest.fixture
def schedule_store(tmp_path: Path) -> ScheduleStore:
    return ScheduleStore(db_path=tmp_path / "test_cams.db")


@pytest.fixture
def result_store(schedule_store: ScheduleStore) -> ResultStore:
    store = ResultStore(schedule_store, history_limit=5)
    yield store
    store.close()


class FakeRunner:
    """Probe runner stand-in that records concurrency instead of touching the network."""

    def __init__(self, delay: float = 0.0, failing: set[str] | None = None) -> None:
        self.delay = delay
        self.failing = failing or set()
        self.calls: Counter[str] = Counter()
        self.active_by_app: Counter[str] = Counter()
        self.max_active_by_app: Counter[str] = Counter()
        self.active = 0
        self.max_active = 0

    async def run(self, conn: DatabaseConnection, application_id: str = "") -> TestResult:
        self.calls[application_id] += 1
        self.active += 1
        self.active_by_app[application_id] += 1
        self.max_active = max(self.max_active, self.active)
        self.max_active_by_app[application_id] = max(
            self.max_active_by_app[application_id], self.active_by_app[application_id],
        )
        try:
            await asyncio.sleep(self.delay)
        finally:
            self.active -= 1
            self.active_by_app[application_id] -= 1

        if conn.id in self.failing:
            return TestResult(
                application_id=application_id, connection_id=conn.id,
                connection_type=conn.type.value, success=False, latency_ms=1.0,
                error=FailureKind.NETWORK_ERROR, error_code="NETWORK", message="refused",
            )
        return TestResult(
            application_id=application_id, connection_id=conn.id,
            connection_type=conn.type.value, success=True, latency_ms=1.0, message="ok",
        )


@pytest.fixture
def make_runner() -> type[FakeRunner]:
    """Factory for fake probe runners: ``make_runner(delay=0.1, failing={"conn-id"})``."""
    return FakeRunner
