"""Application registry: loads connections.yaml and provides typed models.

Applications and their database/API connections are owned by the CAMS
CRUD backend. The scheduler only reads connection parameters from here.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

import yaml

logger = logging.getLogger(__name__)

REGISTRY_PATH = Path("connections.yaml")


# ── Data models ──────────────────────────────────────────────────────────────


class DatabaseType(str, Enum):
    SQLSERVER = "sqlserver"
    MYSQL = "mysql"
    POSTGRESQL = "postgresql"
    ORACLE = "oracle"
    SQLITE = "sqlite"
    MONGODB = "mongodb"
    REDIS = "redis"
    REST_API = "rest_api"
    GRAPHQL = "graphql"
    GITHUB_API = "github_api"


DEFAULT_PORTS: dict[DatabaseType, int] = {
    DatabaseType.SQLSERVER: 1433,
    DatabaseType.MYSQL: 3306,
    DatabaseType.POSTGRESQL: 5432,
    DatabaseType.ORACLE: 1521,
    DatabaseType.MONGODB: 27017,
    DatabaseType.REDIS: 6379,
}

# Spellings used by the CAMS UI and older exports
_TYPE_ALIASES = {
    "mssql": DatabaseType.SQLSERVER,
    "postgres": DatabaseType.POSTGRESQL,
    "mongo": DatabaseType.MONGODB,
    "restapi": DatabaseType.REST_API,
    "api": DatabaseType.REST_API,
    "githubapi": DatabaseType.GITHUB_API,
    "github": DatabaseType.GITHUB_API,
}


@dataclass
class DatabaseConnection:
    """A single database or API connection belonging to an application."""

    id: str
    name: str
    type: DatabaseType
    server: str = ""
    port: int | None = None
    database: str = ""
    username: str = ""
    password: str = ""
    connection_string: str = ""
    api_base_url: str = ""
    api_key: str = ""
    is_active: bool = True

    @property
    def effective_port(self) -> int | None:
        return self.port or DEFAULT_PORTS.get(self.type)


@dataclass
class Application:
    """A registered application with its connections."""

    id: str
    name: str
    description: str = ""
    connections: list[DatabaseConnection] = field(default_factory=list)

    @property
    def active_connections(self) -> list[DatabaseConnection]:
        return [c for c in self.connections if c.is_active]


# ── Registry ─────────────────────────────────────────────────────────────────


class ApplicationRegistry:
    """Loads and caches applications from connections.yaml."""

    def __init__(self, path: Path | str | None = None) -> None:
        self._path = Path(path) if path else REGISTRY_PATH
        self._applications: list[Application] = []
        self._loaded = False

    def load(self, force: bool = False) -> list[Application]:
        """Parse connections.yaml and return the Application list."""
        if self._loaded and not force:
            return self._applications

        self._applications = []
        if not self._path.exists():
            logger.warning("Registry file not found: %s", self._path)
            self._loaded = True
            return self._applications

        try:
            raw = yaml.safe_load(self._path.read_text(encoding="utf-8")) or {}
        except Exception as e:
            logger.error("Failed to parse %s: %s", self._path, e)
            self._loaded = True
            return self._applications

        for entry in raw.get("applications", []) or []:
            try:
                self._applications.append(_parse_application(entry))
            except Exception as e:
                logger.warning("Skipping malformed application entry: %s", e)

        self._loaded = True
        logger.info("Loaded %d applications from registry", len(self._applications))
        return self._applications

    @property
    def applications(self) -> list[Application]:
        return self.load()

    def get(self, application_id: str) -> Application | None:
        return next((a for a in self.applications if a.id == application_id), None)

    def get_connection(self, connection_id: str) -> tuple[Application, DatabaseConnection] | None:
        """Find a connection by id together with its owning application."""
        for app in self.applications:
            for conn in app.connections:
                if conn.id == connection_id:
                    return app, conn
        return None

    def to_dict(self) -> list[dict[str, Any]]:
        """Serialize all applications for the API."""
        return [application_to_dict(a) for a in self.applications]

    def reload(self) -> list[Application]:
        """Force reload from disk."""
        return self.load(force=True)


# ── Parsers ──────────────────────────────────────────────────────────────────


def parse_database_type(value: str) -> DatabaseType:
    """Accept enum values plus the PascalCase names used by the CAMS backend."""
    key = str(value).strip().lower().replace("-", "_")
    try:
        return DatabaseType(key)
    except ValueError:
        pass
    compact = key.replace("_", "")
    for t in DatabaseType:
        if t.value.replace("_", "") == compact:
            return t
    if compact in _TYPE_ALIASES:
        return _TYPE_ALIASES[compact]
    raise ValueError(f"Unknown connection type: {value}")


def _parse_connection(raw: dict[str, Any]) -> DatabaseConnection:
    port = raw.get("port")
    return DatabaseConnection(
        id=str(raw["id"]),
        name=raw.get("name", str(raw["id"])),
        type=parse_database_type(raw.get("type", "")),
        server=raw.get("server", ""),
        port=int(port) if port else None,
        database=raw.get("database", "") or "",
        username=raw.get("username", "") or "",
        password=raw.get("password", "") or "",
        connection_string=raw.get("connection_string", "") or "",
        api_base_url=raw.get("api_base_url", "") or "",
        api_key=raw.get("api_key", "") or "",
        is_active=bool(raw.get("is_active", True)),
    )


def _parse_application(raw: dict[str, Any]) -> Application:
    connections = []
    for c in raw.get("connections") or []:
        try:
            connections.append(_parse_connection(c))
        except Exception as e:
            logger.warning("Skipping malformed connection in %s: %s", raw.get("id"), e)

    return Application(
        id=str(raw["id"]),
        name=raw.get("name", str(raw["id"])),
        description=raw.get("description", "") or "",
        connections=connections,
    )


def connection_to_dict(c: DatabaseConnection) -> dict[str, Any]:
    """Serialize a connection with credentials masked."""
    return {
        "id": c.id,
        "name": c.name,
        "type": c.type.value,
        "server": c.server,
        "port": c.effective_port,
        "database": c.database,
        "username": c.username,
        "has_password": bool(c.password),
        "api_base_url": c.api_base_url,
        "has_api_key": bool(c.api_key),
        "is_active": c.is_active,
    }


def application_to_dict(a: Application) -> dict[str, Any]:
    return {
        "id": a.id,
        "name": a.name,
        "description": a.description,
        "connections": [connection_to_dict(c) for c in a.connections],
    }
