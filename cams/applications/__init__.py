"""Application registry: applications and their database/API connections."""

from .registry import Application, ApplicationRegistry, DatabaseConnection, DatabaseType
