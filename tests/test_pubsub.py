import io
import json
from concurrent.futures import Future
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import pytest

from funken import logs, pubsub
from funken.config import load_config
from funken.context import background
from funken.models import GroupNGFilter
from funken.pubsub import (
    ConsumerNotFoundError,
    InvalidConsumerError,
    InvalidStreamError,
    JetStreamManager,
    StreamNotFoundError,
    SubscribeParams,
    consumer_config,
    jetstream_options,
    nats_connect_options,
    new_or_get_singleton,
    stream_config,
)

ENV = {
    "APP_PORT": "8080",
    "MONGO_HOST": "localhost",
    "MONGO_DATABASE": "funken",
    "MONGO_AUTH_DB": "admin",
    "MONGO_USERNAME": "user",
    "MONGO_PASSWORD": "password",
    "NATS_URL": "nats://localhost:4222",
    "NATS_NAME": "funken",
    "JS_DOMAIN": "hub",
}


@pytest.fixture
def cfg():
    return load_config(None, ENV)


@pytest.fixture
def log_buffer(cfg):
    buf = io.StringIO()
    logs.initialize(buf, cfg, [])
    return buf


def _records(buf):
    return [json.loads(line) for line in buf.getvalue().splitlines()]


class FakeMsg:
    def __init__(self, data, nak_error=None):
        self.data = data
        self.acked = False
        self.nak_delay = None
        self._nak_error = nak_error

    def ack(self):
        self.acked = True

    def nak_with_delay(self, delay):
        if self._nak_error is not None:
            raise self._nak_error
        self.nak_delay = delay


class FakeConsumeContext:
    def __init__(self):
        self.stopped = False

    def stop(self):
        self.stopped = True


class FakeConsumer:
    def __init__(self, config, messages):
        self.config = config
        self.messages = messages
        self.context = FakeConsumeContext()

    def consume(self, callback):
        for msg in self.messages:
            callback(msg)
        return self.context


class FakeStream:
    def __init__(self, config):
        self.config = config
        self.consumers = {}
        self.pending = []

    def info(self, ctx):
        return SimpleNamespace(config=dict(self.config))

    def consumer(self, ctx, name):
        if name not in self.consumers:
            raise ConsumerNotFoundError()
        return self.consumers[name]

    def create_or_update_consumer(self, ctx, config):
        consumer = FakeConsumer(config, self.pending)
        self.consumers[config["name"]] = consumer
        return consumer


class FakeJS:
    def __init__(self):
        self.streams = {}
        self.published = []
        self.error = None
        self.paused = True
        self.calls = []

    def _maybe_fail(self):
        if self.error is not None:
            raise self.error

    def publish_msg(self, ctx, msg, **kwargs):
        self._maybe_fail()
        self.published.append((msg, kwargs))
        return SimpleNamespace(stream="chat", sequence=len(self.published))

    def publish_msg_async(self, msg, **kwargs):
        self._maybe_fail()
        self.published.append((msg, kwargs))
        future = Future()
        future.set_result(SimpleNamespace(stream="chat", sequence=len(self.published)))
        return future

    def pause_consumer(self, ctx, stream, consumer, until):
        self._maybe_fail()
        self.calls.append(("pause", stream, consumer, until))
        return SimpleNamespace(paused=self.paused)

    def resume_consumer(self, ctx, stream, consumer):
        self._maybe_fail()
        self.calls.append(("resume", stream, consumer))

    def delete_consumer(self, ctx, stream, consumer):
        self._maybe_fail()
        self.calls.append(("delete_consumer", stream, consumer))

    def delete_stream(self, ctx, name):
        self._maybe_fail()
        self.calls.append(("delete_stream", name))

    def stream_name_by_subject(self, ctx, subject):
        for name, stream in self.streams.items():
            if subject in stream.config.get("subjects", []):
                return name
        raise StreamNotFoundError()

    def stream(self, ctx, name):
        if name not in self.streams:
            raise StreamNotFoundError()
        return self.streams[name]

    def create_stream(self, ctx, config):
        stream = FakeStream(config)
        self.streams[config["name"]] = stream
        return stream

    def update_stream(self, ctx, config):
        stream = self.streams[config["name"]]
        stream.config = config
        return stream


class FakeConn:
    def __init__(self, js=None, js_error=None):
        self.js = js or FakeJS()
        self.js_error = js_error
        self.closed = False
        self.domain = None

    def jetstream(self, domain, options):
        if self.js_error is not None:
            raise self.js_error
        self.domain = domain
        return self.js

    def close(self):
        self.closed = True


@pytest.fixture
def js():
    return FakeJS()


@pytest.fixture
def manager(log_buffer, js):
    return JetStreamManager(js, FakeConn(js))


def _cancelled():
    ctx = background().with_cancel()
    ctx.cancel()
    return ctx


def test_nats_connect_options_use_config_defaults(cfg):
    opts = nats_connect_options(cfg)
    assert opts["name"] == "funken"
    assert opts["max_reconnects"] == 60
    assert opts["reconnect_wait"] == timedelta(milliseconds=2000)
    assert opts["reconnect_jitter"] == timedelta(milliseconds=100)
    assert opts["reconnect_jitter_tls"] == timedelta(milliseconds=1000)
    assert opts["timeout"] == timedelta(milliseconds=2000)
    assert opts["ping_interval"] == timedelta(minutes=2)
    assert opts["max_pings_outstanding"] == 2


def test_nats_handlers_log(cfg, log_buffer):
    opts = nats_connect_options(cfg)
    opts["closed_handler"](None)
    opts["disconnect_err_handler"](None, RuntimeError("gone"))
    records = _records(log_buffer)
    assert [r["message"] for r in records] == ["closed connection to NATS", "disconnected from NATS"]
    assert records[1]["level"] == "WARN"
    assert records[1]["error"] == "gone"


def test_jetstream_options_use_config_defaults(cfg, log_buffer):
    opts = jetstream_options(cfg)
    assert opts["default_timeout"] == timedelta(seconds=5)
    assert opts["publish_async_timeout"] == timedelta(seconds=5)
    assert opts["publish_async_max_pending"] == 10
    opts["client_trace"]["request_sent"]("chat.in", b"{}")
    record = _records(log_buffer)[-1]
    assert record["message"] == "JS Request Sent"
    assert record["subject"] == "chat.in"
    assert record["payload"] == "{}"


def test_stream_config():
    config = stream_config("chat", "chat.group.1")
    assert config["name"] == "chat"
    assert config["subjects"] == ["chat.group.1"]
    assert config["replicas"] == 3
    assert config["max_age"] == timedelta(hours=24)
    assert config["max_bytes"] == 500 * 1024 * 1024
    assert config["duplicates"] == timedelta(seconds=90)
    assert config["allow_direct"] is True


def test_consumer_config():
    now = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
    config = consumer_config("worker", "chat.>", now)
    assert config["name"] == config["durable"] == "worker"
    assert config["filter_subject"] == "chat.>"
    assert config["opt_start_time"] == now - timedelta(minutes=5)
    assert config["ack_wait"] == timedelta(seconds=30)
    assert config["inactive_threshold"] == timedelta(minutes=10)
    assert config["max_deliver"] == 5
    assert config["backoff"] == [timedelta(milliseconds=500), timedelta(seconds=1), timedelta(seconds=2)]


def test_publish_sends_json_and_header(manager, js):
    payload = {"group": "g1", "count": 3}
    ack = manager.publish(background(), "chat.g1", payload, {"Nats-Msg-Id": ["m1"]}, expected_stream="chat")
    assert ack.sequence == 1
    msg, kwargs = js.published[0]
    assert msg.subject == "chat.g1"
    assert json.loads(msg.data) == payload
    assert msg.header == {"Nats-Msg-Id": ["m1"]}
    assert kwargs == {"expected_stream": "chat"}


def test_publish_model_uses_its_json(manager, js):
    ng_filter = GroupNGFilter(id="f1", group_id="g1", title="t", pattern="p")
    manager.publish(background(), "chat.filters", ng_filter, None)
    msg, _ = js.published[0]
    assert msg.data == ng_filter.to_json().encode()
    assert msg.header == {}


def test_publish_unserializable_payload_raises(manager, js, log_buffer):
    with pytest.raises(TypeError):
        manager.publish(background(), "chat", object(), None)
    assert js.published == []
    assert _records(log_buffer)[-1]["level"] == "ERROR"


def test_publish_error_is_logged_and_raised(manager, js, log_buffer):
    js.error = ConnectionError("no responders")
    with pytest.raises(ConnectionError):
        manager.publish(background(), "chat", {"a": 1}, None)
    record = _records(log_buffer)[-1]
    assert record["message"] == "failed to publish message"
    assert record["error"] == "no responders"


def test_publish_async_returns_future(manager, js):
    future = manager.publish_async(background(), "chat", [1, 2], None)
    assert future.result().sequence == 1
    assert json.loads(js.published[0][0].data) == [1, 2]


def test_publish_async_error(manager, js, log_buffer):
    js.error = RuntimeError("too many pending")
    with pytest.raises(RuntimeError):
        manager.publish_async(background(), "chat", {}, None)
    assert _records(log_buffer)[-1]["message"] == "failed to publish message async"


def test_pause_consumer(manager, js, log_buffer):
    until = datetime(2030, 1, 1, tzinfo=timezone.utc)
    manager.pause_consumer(background(), "chat", "worker", until)
    assert js.calls == [("pause", "chat", "worker", until)]
    assert _records(log_buffer) == []


def test_pause_consumer_not_paused_is_logged(manager, js, log_buffer):
    js.paused = False
    manager.pause_consumer(background(), "chat", "worker", datetime.now(timezone.utc))
    assert _records(log_buffer)[-1]["message"] == "failed to pause consumer"


def test_resume_and_delete(manager, js, log_buffer):
    results = [
        manager.resume_consumer(background(), "chat", "worker"),
        manager.delete_consumer(background(), "chat", "worker"),
        manager.delete_stream(background(), "chat"),
    ]
    assert results == [None, None, None]
    assert js.calls == [
        ("resume", "chat", "worker"),
        ("delete_consumer", "chat", "worker"),
        ("delete_stream", "chat"),
    ]
    assert _records(log_buffer) == []


@pytest.mark.parametrize("method,args", [
    ("resume_consumer", ("chat", "worker")),
    ("delete_consumer", ("chat", "worker")),
    ("delete_stream", ("chat",)),
    ("pause_consumer", ("chat", "worker", datetime(2030, 1, 1))),
])
def test_management_errors_raise(manager, js, method, args):
    js.error = StreamNotFoundError()
    with pytest.raises(StreamNotFoundError):
        getattr(manager, method)(background(), *args)


def test_subscribe_creates_stream_and_consumer(manager, js):
    params = SubscribeParams(stream="chat", consumer="worker", filter_subject="chat.g1")
    manager.subscribe(_cancelled(), "chat.g1", lambda data: None, params)
    stream = js.streams["chat"]
    assert stream.config == stream_config("chat", "chat.g1")
    consumer = stream.consumers["worker"]
    assert consumer.config["filter_subject"] == "chat.g1"
    assert consumer.config["durable"] == "worker"
    assert consumer.context.stopped is True


def test_subscribe_extends_existing_stream(manager, js):
    js.create_stream(None, stream_config("chat", "chat.g1"))
    manager.subscribe(_cancelled(), "chat.g2", lambda data: None, SubscribeParams("chat", "worker"))
    assert js.streams["chat"].config["subjects"] == ["chat.g1", "chat.g2"]


def test_subscribe_requires_stream_name(manager, js):
    with pytest.raises(InvalidStreamError):
        manager.subscribe(_cancelled(), "chat.g1", lambda data: None, SubscribeParams("", "worker"))
    assert js.streams == {}


def test_subscribe_rejects_mismatched_stream(manager, js):
    js.create_stream(None, stream_config("other", "chat.g1"))
    with pytest.raises(InvalidStreamError):
        manager.subscribe(_cancelled(), "chat.g1", lambda data: None, SubscribeParams("chat", "worker"))


def test_subscribe_requires_consumer_name(manager, js):
    with pytest.raises(InvalidConsumerError):
        manager.subscribe(_cancelled(), "chat.g1", lambda data: None, SubscribeParams("chat", ""))
    assert js.streams["chat"].consumers == {}


def test_subscribe_reuses_existing_consumer(manager, js):
    stream = js.create_stream(None, stream_config("chat", "chat.g1"))
    existing = stream.create_or_update_consumer(None, consumer_config("worker", "", datetime.now(timezone.utc)))
    manager.subscribe(_cancelled(), "chat.g1", lambda data: None, SubscribeParams("chat", "worker"))
    assert stream.consumers["worker"] is existing
    assert existing.context.stopped is True


def test_subscribe_handles_messages(manager, js):
    stream = js.create_stream(None, stream_config("chat", "chat.g1"))
    good, bad = FakeMsg(b"ok"), FakeMsg(b"bad")
    stream.pending.extend([good, bad])
    received = []

    def handler(data):
        received.append(data)
        if data == b"bad":
            raise ValueError("rejected")

    manager.subscribe(_cancelled(), "chat.g1", handler, SubscribeParams("chat", "worker"))
    assert received == [b"ok", b"bad"]
    assert good.acked is True and good.nak_delay is None
    assert bad.nak_delay == timedelta(seconds=3)
    assert bad.acked is True


def test_subscribe_failed_nak_skips_ack(manager, js, log_buffer):
    stream = js.create_stream(None, stream_config("chat", "chat.g1"))
    msg = FakeMsg(b"x", nak_error=RuntimeError("nak failed"))
    stream.pending.append(msg)

    def handler(data):
        raise ValueError("rejected")

    manager.subscribe(_cancelled(), "chat.g1", handler, SubscribeParams("chat", "worker"))
    assert msg.acked is False
    messages = [r["message"] for r in _records(log_buffer)]
    assert "failed to NakWithDelay" in messages


def test_close_closes_connection(log_buffer, js):
    conn = FakeConn(js)
    JetStreamManager(js, conn).close()
    assert conn.closed is True


def test_singleton_connects_once(cfg, log_buffer, monkeypatch):
    monkeypatch.setattr(pubsub, "_instance", None)
    calls = []

    def connector(url, options):
        calls.append((url, options["name"]))
        return FakeConn()

    first = new_or_get_singleton(cfg, connector)
    second = new_or_get_singleton(cfg, connector)
    assert first is second
    assert calls == [("nats://localhost:4222", "funken")]


def test_singleton_connect_error(cfg, log_buffer, monkeypatch):
    monkeypatch.setattr(pubsub, "_instance", None)

    def connector(url, options):
        raise ConnectionRefusedError("refused")

    with pytest.raises(ConnectionRefusedError):
        new_or_get_singleton(cfg, connector)
    assert _records(log_buffer)[-1]["message"] == "failed to initialize NATS connection"


def test_singleton_jetstream_error_closes_connection(cfg, log_buffer, monkeypatch):
    monkeypatch.setattr(pubsub, "_instance", None)
    conn = FakeConn(js_error=RuntimeError("bad domain"))
    with pytest.raises(RuntimeError):
        new_or_get_singleton(cfg, lambda url, options: conn)
    assert conn.closed is True
    assert _records(log_buffer)[-1]["message"] == "failed to create JetStream instance"


def test_singleton_passes_domain(cfg, log_buffer, monkeypatch):
    monkeypatch.setattr(pubsub, "_instance", None)
    conn = FakeConn()
    manager = new_or_get_singleton(cfg, lambda url, options: conn)
    assert conn.domain == "hub"
    manager.close()
    assert conn.closed is True