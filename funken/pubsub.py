"""Publishing to and consuming from JetStream streams.

The manager talks to a JetStream client supplied by a connector. The client
is expected to provide ``publish_msg``, ``publish_msg_async``,
``pause_consumer``, ``resume_consumer``, ``delete_consumer``,
``delete_stream``, ``stream_name_by_subject``, ``stream``, ``create_stream``
and ``update_stream``; it reports missing streams and consumers by raising
:class:`StreamNotFoundError` and :class:`ConsumerNotFoundError`.
"""

import json
import threading
from concurrent.futures import Future
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Mapping, Optional

from funken import logs
from funken.config import Config
from funken.context import Context
from funken.models import BaseModel

NAK_DELAY = timedelta(seconds=3)


class InvalidStreamError(ValueError):
    """Raised when a stream name is missing or does not match the subject."""

    def __init__(self, message: str = "invalid stream") -> None:
        super().__init__(message)


class InvalidConsumerError(ValueError):
    """Raised when a consumer name is missing."""

    def __init__(self, message: str = "invalid consumer") -> None:
        super().__init__(message)


class StreamNotFoundError(LookupError):
    """Raised by a JetStream client when a stream does not exist."""

    def __init__(self, message: str = "nats: stream not found") -> None:
        super().__init__(message)


class ConsumerNotFoundError(LookupError):
    """Raised by a JetStream client when a consumer does not exist."""

    def __init__(self, message: str = "nats: consumer not found") -> None:
        super().__init__(message)


@dataclass(frozen=True)
class SubscribeParams:
    """Where a subscription reads from."""

    stream: str = ""
    consumer: str = ""
    filter_subject: str = ""


@dataclass(frozen=True)
class _OutgoingMsg:
    subject: str
    data: bytes
    header: Dict[str, List[str]] = field(default_factory=dict)


def _service_logger() -> logs.Logger:
    return logs.bind("service", "jetstream_manager")


def nats_connect_options(cfg: Config) -> Dict[str, Any]:
    """Return the connection options described by ``cfg``."""
    logger = _service_logger()
    nats = cfg.nats

    def closed_handler(conn: Any) -> None:
        logger.info(None, "closed connection to NATS")

    def disconnect_err_handler(conn: Any, err: Optional[BaseException]) -> None:
        logger.warn(None, "disconnected from NATS", "error", None if err is None else str(err))

    return {
        "name": nats.name,
        "max_reconnects": nats.max_reconnect,
        "reconnect_wait": timedelta(milliseconds=nats.reconnect_wait),
        "reconnect_jitter": timedelta(milliseconds=nats.reconnect_jitter),
        "reconnect_jitter_tls": timedelta(milliseconds=nats.reconnect_jitter_tls),
        "timeout": timedelta(milliseconds=nats.timeout),
        "ping_interval": timedelta(minutes=nats.ping_interval),
        "max_pings_outstanding": nats.max_pings_out,
        "closed_handler": closed_handler,
        "disconnect_err_handler": disconnect_err_handler,
    }


def jetstream_options(cfg: Config) -> Dict[str, Any]:
    """Return the JetStream client options described by ``cfg``."""
    logger = _service_logger()
    js = cfg.jetstream

    def request_sent(subject: str, payload: bytes) -> None:
        logger.debug(
            None, "JS Request Sent", "subject", subject, "payload", payload.decode("utf-8", "replace")
        )

    def response_received(subject: str, payload: bytes, header: Any) -> None:
        logger.debug(
            None,
            "JS Response Received",
            "subject",
            subject,
            "payload",
            payload.decode("utf-8", "replace"),
            "header",
            header,
        )

    return {
        "default_timeout": timedelta(seconds=js.timeout),
        "publish_async_timeout": timedelta(seconds=js.publish_async_timeout),
        "publish_async_max_pending": js.publish_async_max_pending,
        "client_trace": {
            "request_sent": request_sent,
            "response_received": response_received,
        },
    }


def stream_config(name: str, subject: str) -> Dict[str, Any]:
    """Return the configuration of a new stream ``name`` bound to ``subject``."""
    return {
        "name": name,
        "subjects": [subject],
        "storage": "file",
        "replicas": 3,
        "retention": "limits",
        "max_age": timedelta(hours=24),
        "max_bytes": 500 * 1024 * 1024,
        "discard": "old",
        "allow_direct": True,
        "duplicates": timedelta(seconds=90),
    }


def consumer_config(name: str, filter_subject: str, now: datetime) -> Dict[str, Any]:
    """Return the configuration of a new durable consumer starting five minutes before ``now``."""
    return {
        "name": name,
        "durable": name,
        "filter_subject": filter_subject,
        "deliver_policy": "by_start_time",
        "opt_start_time": now - timedelta(minutes=5),
        "ack_policy": "explicit",
        "ack_wait": timedelta(seconds=30),
        "replay_policy": "instant",
        "inactive_threshold": timedelta(minutes=10),
        "max_deliver": 5,
        "backoff": [
            timedelta(milliseconds=500),
            timedelta(seconds=1),
            timedelta(seconds=2),
        ],
    }


def _encode_payload(payload: Any) -> bytes:
    if isinstance(payload, BaseModel):
        return payload.to_json().encode("utf-8")
    return json.dumps(payload, separators=(",", ":")).encode("utf-8")


class JetStreamManager:
    """Publishes messages and manages streams and consumers."""

    def __init__(self, js: Any, conn: Any, logger: Optional[logs.Logger] = None) -> None:
        self._js = js
        self._conn = conn
        self._logger = logger if logger is not None else _service_logger()

    def close(self) -> None:
        self._conn.close()

    def _message(self, ctx: Optional[Context], subject: str, payload: Any, metadata: Optional[Mapping[str, Any]]) -> _OutgoingMsg:
        try:
            data = _encode_payload(payload)
        except (TypeError, ValueError) as exc:
            self._logger.error(ctx, str(exc))
            raise
        header = {key: list(values) for key, values in (metadata or {}).items()}
        return _OutgoingMsg(subject, data, header)

    def publish(
        self,
        ctx: Optional[Context],
        subject: str,
        payload: Any,
        metadata: Optional[Mapping[str, Any]] = None,
        **kwargs: Any,
    ) -> Any:
        """Publish ``payload`` as JSON and return the server's acknowledgement."""
        msg = self._message(ctx, subject, payload, metadata)
        try:
            return self._js.publish_msg(ctx, msg, **kwargs)
        except Exception as exc:
            self._logger.error(ctx, "failed to publish message", "error", str(exc))
            raise

    def publish_async(
        self,
        ctx: Optional[Context],
        subject: str,
        payload: Any,
        metadata: Optional[Mapping[str, Any]] = None,
        **kwargs: Any,
    ) -> Future:
        """Publish ``payload`` as JSON without waiting; the future resolves to the acknowledgement."""
        msg = self._message(ctx, subject, payload, metadata)
        try:
            return self._js.publish_msg_async(msg, **kwargs)
        except Exception as exc:
            self._logger.error(ctx, "failed to publish message async", "error", str(exc))
            raise

    def pause_consumer(self, ctx: Optional[Context], stream: str, consumer: str, until: datetime) -> None:
        """Pause ``consumer`` on ``stream`` until ``until``."""
        try:
            response = self._js.pause_consumer(ctx, stream, consumer, until)
        except Exception as exc:
            self._logger.error(ctx, "failed to pause consumer", "error", str(exc))
            raise
        if not response.paused:
            self._logger.error(ctx, "failed to pause consumer", "error", None)

    def resume_consumer(self, ctx: Optional[Context], stream: str, consumer: str) -> None:
        try:
            self._js.resume_consumer(ctx, stream, consumer)
        except Exception as exc:
            self._logger.error(ctx, "failed to resume consumer", "error", str(exc))
            raise

    def delete_consumer(self, ctx: Optional[Context], stream: str, consumer: str) -> None:
        try:
            self._js.delete_consumer(ctx, stream, consumer)
        except Exception as exc:
            self._logger.error(ctx, "failed to delete consumer", "error", str(exc))
            raise

    def delete_stream(self, ctx: Optional[Context], name: str) -> None:
        try:
            self._js.delete_stream(ctx, name)
        except Exception as exc:
            self._logger.error(ctx, "failed to delete stream", "error", str(exc))
            raise

    def subscribe(
        self,
        ctx: Context,
        subject: str,
        handler: Callable[[Any], Any],
        params: SubscribeParams,
    ) -> None:
        """Deliver messages on ``subject`` to ``handler`` until ``ctx`` is cancelled.

        A message is negatively acknowledged with a delay when ``handler`` raises.
        """
        stream = self._get_stream(ctx, subject, params.stream)
        consumer = self._get_consumer(ctx, stream, params.consumer, params.filter_subject)

        def on_message(msg: Any) -> None:
            try:
                handler(msg.data)
            except Exception as exc:
                self._logger.warn(ctx, "failed to handle message", "error", str(exc))
                try:
                    msg.nak_with_delay(NAK_DELAY)
                except Exception as nak_exc:
                    self._logger.error(ctx, "failed to NakWithDelay", "error", str(nak_exc))
                    return
            try:
                msg.ack()
            except Exception as ack_exc:
                self._logger.warn(ctx, "failed to ack message", "error", str(ack_exc))

        try:
            consume_context = consumer.consume(on_message)
        except Exception as exc:
            self._logger.error(ctx, "failled to consume message", "error", str(exc))
            raise

        ctx.wait()
        consume_context.stop()

    def _get_stream(self, ctx: Optional[Context], subject: str, stream_name: str) -> Any:
        try:
            bound_name = self._js.stream_name_by_subject(ctx, subject)
        except StreamNotFoundError:
            return self._bind_stream(ctx, subject, stream_name)
        except Exception as exc:
            self._logger.error(ctx, "failed to get stream by subject", "error", str(exc))
            raise
        if bound_name != stream_name:
            raise InvalidStreamError()
        return self._js.stream(ctx, stream_name)

    def _bind_stream(self, ctx: Optional[Context], subject: str, stream_name: str) -> Any:
        self._check_stream_name(ctx, stream_name)
        try:
            stream = self._js.stream(ctx, stream_name)
        except StreamNotFoundError:
            try:
                return self._js.create_stream(ctx, stream_config(stream_name, subject))
            except Exception as exc:
                self._logger.error(ctx, "failed to create stream", "error", str(exc))
                raise

        try:
            info = stream.info(ctx)
        except Exception as exc:
            self._logger.error(ctx, "failed to get stream info", "error", str(exc))
            raise
        config = dict(info.config)
        config["subjects"] = [*config.get("subjects", []), subject]
        try:
            return self._js.update_stream(ctx, config)
        except Exception as exc:
            self._logger.error(ctx, "failed to update stream", "error", str(exc))
            raise

    def _get_consumer(self, ctx: Optional[Context], stream: Any, name: str, filter_subject: str) -> Any:
        try:
            return stream.consumer(ctx, name)
        except ConsumerNotFoundError:
            self._check_consumer_name(ctx, name)
            config = consumer_config(name, filter_subject, datetime.now(timezone.utc))
            try:
                return stream.create_or_update_consumer(ctx, config)
            except Exception as exc:
                self._logger.error(ctx, "failed to create or update consumer", "error", str(exc))
                raise
        except Exception as exc:
            self._logger.error(ctx, "failed to get consumer", "error", str(exc))
            raise

    def _check_stream_name(self, ctx: Optional[Context], stream: str) -> None:
        if not stream:
            self._logger.error(ctx, "stream name must not be empty")
            raise InvalidStreamError()

    def _check_consumer_name(self, ctx: Optional[Context], consumer: str) -> None:
        if not consumer:
            self._logger.error(ctx, "consumer must not be empty")
            raise InvalidConsumerError()


_instance: Optional[JetStreamManager] = None
_instance_lock = threading.Lock()


def _init_jetstream(cfg: Config, connector: Callable[[str, Dict[str, Any]], Any]) -> JetStreamManager:
    logger = _service_logger()
    try:
        conn = connector(cfg.nats.url, nats_connect_options(cfg))
    except Exception as exc:
        logger.error(None, "failed to initialize NATS connection", "error", str(exc))
        raise
    try:
        js = conn.jetstream(cfg.jetstream.domain, jetstream_options(cfg))
    except Exception as exc:
        conn.close()
        logger.error(None, "failed to create JetStream instance", "error", str(exc))
        raise
    return JetStreamManager(js, conn, logger)


def new_or_get_singleton(cfg: Config, connector: Callable[[str, Dict[str, Any]], Any]) -> JetStreamManager:
    """Create the process-wide manager on first use and return it afterwards.

    ``connector(url, options)`` opens the connection; the connection's
    ``jetstream(domain, options)`` returns the JetStream client.
    """
    global _instance
    with _instance_lock:
        if _instance is None:
            _instance = _init_jetstream(cfg, connector)
        return _instance