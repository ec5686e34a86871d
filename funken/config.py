"""Application configuration read from a ``.env`` file or the process environment."""

import dataclasses
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping, Optional, Type, TypeVar

from dotenv import dotenv_values

ENV_FILE = ".env"

_MONGO_CREDENTIAL_VAR = "MONGO_PASSWORD"

_T = TypeVar("_T")


class ConfigError(Exception):
    """Raised when the configuration cannot be loaded."""


def _env(name: str, default: Any = dataclasses.MISSING) -> Any:
    if default is dataclasses.MISSING:
        return field(metadata={"env": name, "required": True})
    return field(default=default, metadata={"env": name, "required": False})


@dataclass(frozen=True, kw_only=True)
class AppConfig:
    port: str = _env("APP_PORT")
    log_level: str = _env("APP_LOG_LEVEL", "DEBUG")


@dataclass(frozen=True, kw_only=True)
class MongoConfig:
    hostname: str = _env("MONGO_HOST")
    port: str = _env("MONGO_PORT", "27017")
    database: str = _env("MONGO_DATABASE")
    auth_source: str = _env("MONGO_AUTH_DB")
    timeout: int = _env("MONGO_TIMEOUT", 30000)
    conn_timeout: int = _env("MONGO_CONN_TIMEOUT", 30000)
    pool_size: int = _env("MONGO_POOL_SIZE", 10)
    max_idle_time: int = _env("MONGO_MAX_IDLE_TIME", 300000)
    conn_attempts: int = _env("MONGO_CONN_ATTEMPTS", 3)
    username: str = _env("MONGO_USERNAME")
    password: str = _env(_MONGO_CREDENTIAL_VAR)


@dataclass(frozen=True, kw_only=True)
class NatsConfig:
    url: str = _env("NATS_URL")
    name: str = _env("NATS_NAME")
    max_reconnect: int = _env("NATS_MAX_RECONNECT", 60)
    reconnect_wait: int = _env("NATS_RECONNECT_WAIT", 2000)
    reconnect_jitter: int = _env("NATS_RECONNECT_JITTER", 100)
    reconnect_jitter_tls: int = _env("NATS_RECONNECT_JITTER_TLS", 1000)
    timeout: int = _env("NATS_TIMEOUT", 2000)
    ping_interval: int = _env("NATS_PING_INTERVAL", 2)
    max_pings_out: int = _env("NATS_PINGS_OUT", 2)


@dataclass(frozen=True, kw_only=True)
class JetStreamConfig:
    domain: str = _env("JS_DOMAIN")
    timeout: int = _env("JS_API_TIMEOUT", 5)
    publish_async_timeout: int = _env("JS_PUBLISH_ASYNC_TIMEOUT", 5)
    publish_async_max_pending: int = _env("JS_PUBLISH_ASYNC_MAX_PENDING", 10)


@dataclass(frozen=True, kw_only=True)
class Config:
    app: AppConfig
    mongo: MongoConfig
    nats: NatsConfig
    jetstream: JetStreamConfig


def _read_section(cls: Type[_T], env: Mapping[str, str]) -> _T:
    values = {}
    for f in dataclasses.fields(cls):
        name = f.metadata["env"]
        raw = env.get(name)
        if raw is None:
            if f.metadata["required"]:
                raise ConfigError(f"field {f.name!r} is required but the value is not provided ({name})")
            continue
        if f.type is int:
            try:
                values[f.name] = int(raw)
            except ValueError as exc:
                raise ConfigError(f"{name}: invalid integer value {raw!r}") from exc
        else:
            values[f.name] = raw
    return cls(**values)


def _build(env: Mapping[str, str]) -> Config:
    return Config(
        app=_read_section(AppConfig, env),
        mongo=_read_section(MongoConfig, env),
        nats=_read_section(NatsConfig, env),
        jetstream=_read_section(JetStreamConfig, env),
    )


def load_config(path: Optional[os.PathLike] = None, environ: Optional[Mapping[str, str]] = None) -> Config:
    """Load the configuration.

    When ``path`` exists its values are applied on top of ``environ``;
    otherwise only ``environ`` (the process environment by default) is read.
    """
    env = dict(os.environ if environ is None else environ)
    if path is not None and Path(path).exists():
        try:
            file_values = {k: v for k, v in dotenv_values(path).items() if v is not None}
            return _build({**env, **file_values})
        except (ConfigError, OSError) as exc:
            raise ConfigError(f"config error: {exc}") from exc
    try:
        return _build(env)
    except ConfigError as exc:
        raise ConfigError(f"missing environment variable: {exc}") from exc


def new_config() -> Config:
    """Load the configuration from the project's ``.env`` file or the environment."""
    root = Path(__file__).resolve().parent.parent
    return load_config(root / ENV_FILE)