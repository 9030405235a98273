"""Dataclasses for top-level application config."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass(slots=True)
class ConnectionConfig:
    host: str = "localhost"
    port: int = 6379
    auth: str | None = None
    database: int | None = None
    keepalive_seconds: float = 300.0
    connect_timeout_seconds: float = 5.0
    read_timeout_seconds: float = 1.0
    drain_timeout_seconds: float = 0.001
    lock_path: str | None = None

    @property
    def address(self) -> str:
        return f"{self.host}:{self.port}"


@dataclass(slots=True)
class PoolConfig:
    size: int = 1
    listen: str = ""
    claim_timeout_seconds: float = 0.0
    max_clients: int = 256
    rewrite_terminators: bool = True


@dataclass(slots=True)
class LoggingConfig:
    level: str = "WARNING"
    fmt: str = "text"
    sink: str = "stderr"
    file_path: str | None = None
    service_name: str = "redline"


@dataclass(slots=True)
class AppConfig:
    environment: str = "development"
    connection: ConnectionConfig = field(default_factory=ConnectionConfig)
    pool: PoolConfig = field(default_factory=PoolConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


VALID_LOG_LEVELS = {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}
VALID_LOG_FORMATS = {"text", "json", "ecs_json"}
VALID_LOG_SINKS = {"stderr", "file"}


def _optional_string(raw: Any) -> str | None:
    if raw is None:
        return None
    text = str(raw).strip()
    return text or None


def _parse_int_value(raw: Any, *, field_name: str) -> int:
    if isinstance(raw, bool):
        raise ValueError(f"'{field_name}' must be an integer")
    try:
        return int(str(raw).strip())
    except (TypeError, ValueError) as exc:
        raise ValueError(f"'{field_name}' must be an integer") from exc


def _parse_float_value(raw: Any, *, field_name: str) -> float:
    if isinstance(raw, bool):
        raise ValueError(f"'{field_name}' must be a number")
    try:
        return float(str(raw).strip())
    except (TypeError, ValueError) as exc:
        raise ValueError(f"'{field_name}' must be a number") from exc


def _parse_bool_value(raw: Any, *, field_name: str, default: bool) -> bool:
    if raw is None:
        return default
    if isinstance(raw, bool):
        return raw
    if isinstance(raw, str):
        normalized = raw.strip().lower()
        if normalized in {"1", "true", "yes", "on"}:
            return True
        if normalized in {"0", "false", "no", "off"}:
            return False
    raise ValueError(f"'{field_name}' must be a boolean")


def _section(data: dict[str, Any], name: str) -> dict[str, Any]:
    raw = data.get(name, {})
    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise ValueError(f"'{name}' must be an object")
    return raw


def parse_connection(raw: dict[str, Any]) -> ConnectionConfig:
    defaults = ConnectionConfig()
    host = str(raw.get("host", defaults.host) or "").strip() or defaults.host

    port = _parse_int_value(raw.get("port", defaults.port), field_name="connection.port")
    if not 1 <= port <= 65535:
        raise ValueError("connection.port must be between 1 and 65535")

    database: int | None = None
    database_raw = _optional_string(raw.get("database"))
    if database_raw is not None:
        database = _parse_int_value(database_raw, field_name="connection.database")
        if database < 0:
            raise ValueError("connection.database must be zero or greater")

    keepalive = _parse_float_value(
        raw.get("keepalive_seconds", defaults.keepalive_seconds),
        field_name="connection.keepalive_seconds",
    )
    if keepalive < 0:
        raise ValueError("connection.keepalive_seconds must be zero or greater")

    timeouts: dict[str, float] = {}
    for name in ("connect_timeout_seconds", "read_timeout_seconds", "drain_timeout_seconds"):
        value = _parse_float_value(raw.get(name, getattr(defaults, name)), field_name=f"connection.{name}")
        if value <= 0:
            raise ValueError(f"connection.{name} must be greater than zero")
        timeouts[name] = value

    return ConnectionConfig(
        host=host,
        port=port,
        auth=_optional_string(raw.get("auth")),
        database=database,
        keepalive_seconds=keepalive,
        lock_path=_optional_string(raw.get("lock_path")),
        **timeouts,
    )


def parse_pool(raw: dict[str, Any]) -> PoolConfig:
    defaults = PoolConfig()
    size = _parse_int_value(raw.get("size", defaults.size), field_name="pool.size")
    if size < 1:
        raise ValueError("pool.size must be at least 1")
    claim_timeout = _parse_float_value(
        raw.get("claim_timeout_seconds", defaults.claim_timeout_seconds),
        field_name="pool.claim_timeout_seconds",
    )
    if claim_timeout < 0:
        raise ValueError("pool.claim_timeout_seconds must be zero or greater")
    max_clients = _parse_int_value(raw.get("max_clients", defaults.max_clients), field_name="pool.max_clients")
    if max_clients < 1:
        raise ValueError("pool.max_clients must be at least 1")
    if max_clients < size:
        raise ValueError("pool.max_clients must not be smaller than pool.size")
    return PoolConfig(
        size=size,
        listen=str(raw.get("listen", "") or "").strip(),
        claim_timeout_seconds=claim_timeout,
        max_clients=max_clients,
        rewrite_terminators=_parse_bool_value(
            raw.get("rewrite_terminators"),
            field_name="pool.rewrite_terminators",
            default=defaults.rewrite_terminators,
        ),
    )


def parse_logging(raw: dict[str, Any]) -> LoggingConfig:
    level = str(raw.get("level", "WARNING")).upper()
    if level not in VALID_LOG_LEVELS:
        raise ValueError(f"invalid log level '{level}'")
    fmt = str(raw.get("fmt", "text")).lower()
    if fmt not in VALID_LOG_FORMATS:
        raise ValueError(f"invalid log format '{fmt}'")
    sink = str(raw.get("sink", "stderr")).lower()
    if sink not in VALID_LOG_SINKS:
        raise ValueError(f"invalid log sink '{sink}'")
    file_path = _optional_string(raw.get("file_path"))
    if sink == "file" and file_path is None:
        raise ValueError("logging.file_path is required when sink is 'file'")
    return LoggingConfig(
        level=level,
        fmt=fmt,
        sink=sink,
        file_path=file_path,
        service_name=str(raw.get("service_name", "redline")).strip() or "redline",
    )


def parse_config(data: dict[str, Any]) -> AppConfig:
    if not isinstance(data, dict):
        raise ValueError("config root must be an object")
    return AppConfig(
        environment=str(data.get("environment", "development")),
        connection=parse_connection(_section(data, "connection")),
        pool=parse_pool(_section(data, "pool")),
        logging=parse_logging(_section(data, "logging")),
    )
