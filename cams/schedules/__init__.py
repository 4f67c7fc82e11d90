"""Connection test schedules: cadence parsing and SQLite storage."""

from .cadence import Cadence, ScheduleValidationError
from .store import RunStatus, Schedule, ScheduleStore
