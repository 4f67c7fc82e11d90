"""Connection health subsystem: probe engine, result storage, scheduler."""

from .engine import FailureKind, ProbeRunner, RunResult, TestResult, execute_probe
from .scheduler import ConnectionTestScheduler, RunInProgressError, ScheduleState
from .store import ResultHistory, ResultStore
