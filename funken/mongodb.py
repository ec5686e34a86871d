"""MongoDB client wrapper and the sink that routes driver logs to the application log."""

import threading
from typing import Any, Dict, Optional

from pymongo import MongoClient
from pymongo.collection import Collection
from pymongo.errors import PyMongoError
from pymongo.monitoring import (
    CommandFailedEvent,
    CommandListener,
    CommandStartedEvent,
    CommandSucceededEvent,
)
from pymongo.read_preferences import ReadPreference

from funken import logs
from funken.config import Config
from funken.context import Context, background

LOG_LEVEL_INFO = 1
LOG_LEVEL_DEBUG = 2


class NoDocumentsError(LookupError):
    """Raised when a query that must return one document returns none."""

    def __init__(self, message: str = "mongo: no documents in result") -> None:
        super().__init__(message)


class MongoLogSink:
    """Receives driver log messages and writes them through the application logger."""

    def __init__(self) -> None:
        self._logger = logs.bind("service", "mongodb")

    def info(self, level: int, msg: str, *args: Any) -> None:
        if level + 1 == LOG_LEVEL_DEBUG:
            self._logger.debug(background(), msg, *args)
        else:
            self._logger.info(background(), msg, *args)

    def error(self, err: BaseException, msg: str, *args: Any) -> None:
        ctx = logs.add_log_val_to_ctx(background(), "error", str(err))
        self._logger.error(ctx, msg, *args)


class _CommandLogListener(CommandListener):
    """Logs every driver command at debug level."""

    def __init__(self, sink: MongoLogSink) -> None:
        self._sink = sink

    def _log(self, msg: str, event: Any, *extra: Any) -> None:
        self._sink.info(
            LOG_LEVEL_DEBUG - 1,
            msg,
            "commandName",
            event.command_name,
            "databaseName",
            event.database_name,
            "requestId",
            event.request_id,
            *extra,
        )

    def started(self, event: CommandStartedEvent) -> None:
        self._log("Command started", event)

    def succeeded(self, event: CommandSucceededEvent) -> None:
        self._log("Command succeeded", event, "durationMS", event.duration_micros / 1000)

    def failed(self, event: CommandFailedEvent) -> None:
        self._log("Command failed", event, "durationMS", event.duration_micros / 1000, "failure", event.failure)


def _join_host_port(host: str, port: str) -> str:
    return f"[{host}]:{port}" if ":" in host else f"{host}:{port}"


def client_options(cfg: Config) -> Dict[str, Any]:
    """Return the keyword arguments for the MongoDB client described by ``cfg``."""
    mongo = cfg.mongo
    return {
        "host": "mongodb://" + _join_host_port(mongo.hostname, mongo.port),
        "username": mongo.username,
        "password": mongo.password,
        "authSource": mongo.auth_source,
        "maxPoolSize": mongo.pool_size,
        "timeoutMS": mongo.timeout,
        "connectTimeoutMS": mongo.conn_timeout,
        "event_listeners": [_CommandLogListener(MongoLogSink())],
        "connect": False,
    }


class MongoDB:
    """A client bound to the application's database."""

    def __init__(self, db_name: str, client: Any) -> None:
        self.db_name = db_name
        self.client = client
        self._logger = logs.bind("service", "mongodb")

    def collection(self, name: str) -> Collection:
        """Return the named collection of the application's database."""
        return self.client[self.db_name][name]

    def ping(self, ctx: Optional[Context] = None) -> None:
        """Check that the server answers, preferring the primary."""
        self.client.admin.command("ping", read_preference=ReadPreference.PRIMARY_PREFERRED)

    def close(self, ctx: Optional[Context] = None) -> None:
        """Disconnect, logging instead of raising if that fails."""
        self._logger.info(ctx, "Closing MongoDB")
        try:
            self.client.close()
        except PyMongoError as exc:
            self._logger.error(ctx, "Error while closing MongoDB", "error", str(exc))


_instance: Optional[MongoDB] = None
_instance_lock = threading.Lock()


def new_or_get_singleton(cfg: Config) -> MongoDB:
    """Create the process-wide MongoDB client on first use and return it afterwards."""
    global _instance
    with _instance_lock:
        if _instance is None:
            client = MongoClient(**client_options(cfg))
            _instance = MongoDB(cfg.mongo.database, client)
        return _instance