"""Structured JSON logging with values carried by a context."""

import json
import sys
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum, IntEnum
from typing import Any, Iterable, Iterator, List, Optional, TextIO, Tuple

from funken.config import Config
from funken.context import Context

MESSAGE_KEY = "message"
_BAD_KEY = "!BADKEY"


class _Level(IntEnum):
    DEBUG = -4
    INFO = 0
    WARN = 4
    ERROR = 8


class _LogMapKey:
    __slots__ = ()


_LOG_MAP_KEY = _LogMapKey()
_keys: List[str] = []


@dataclass(frozen=True)
class _Attr:
    key: str
    value: Any
    group: bool = False


class _LogMap:
    """Thread-safe mapping shared by contexts derived from one another."""

    def __init__(self) -> None:
        self._data: dict = {}
        self._lock = threading.Lock()

    def store(self, key: str, value: Any) -> None:
        with self._lock:
            self._data[key] = value

    def items(self) -> List[Tuple[str, Any]]:
        with self._lock:
            return list(self._data.items())


def _decimal(value: int, unit: int) -> str:
    whole, frac = divmod(value, unit)
    if not frac:
        return str(whole)
    width = len(str(unit)) - 1
    return f"{whole}.{str(frac).zfill(width).rstrip('0')}"


def _format_duration(value: timedelta) -> str:
    ns = (value // timedelta(microseconds=1)) * 1000
    if ns == 0:
        return "0s"
    sign = "-" if ns < 0 else ""
    ns = abs(ns)
    if ns < 1_000_000_000:
        for unit, suffix in ((1_000_000, "ms"), (1_000, "µs")):
            if ns >= unit:
                return sign + _decimal(ns, unit) + suffix
        return f"{sign}{ns}ns"
    hours, rem = divmod(ns, 3_600_000_000_000)
    minutes, rem = divmod(rem, 60_000_000_000)
    seconds = _decimal(rem, 1_000_000_000) + "s"
    if hours:
        return f"{sign}{hours}h{minutes}m{seconds}"
    if minutes:
        return f"{sign}{minutes}m{seconds}"
    return sign + seconds


def _json_default(value: Any) -> Any:
    if isinstance(value, timedelta):
        return _format_duration(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (set, frozenset, tuple)):
        return list(value)
    return str(value)


def _encode_value(value: Any) -> str:
    if isinstance(value, timedelta):
        value = _format_duration(value)
    return json.dumps(value, default=_json_default, ensure_ascii=False)


def _encode_attrs(attrs: Iterable[_Attr]) -> Iterator[str]:
    for attr in attrs:
        if attr.group:
            if not attr.value:
                continue
            if attr.key == "":
                yield from _encode_attrs(attr.value)
                continue
            yield f"{json.dumps(attr.key)}:{{{','.join(_encode_attrs(attr.value))}}}"
        else:
            yield f"{json.dumps(attr.key)}:{_encode_value(attr.value)}"


def _to_attrs(args: Iterable[Any]) -> Iterator[_Attr]:
    it = iter(args)
    for arg in it:
        if isinstance(arg, _Attr):
            yield arg
        elif isinstance(arg, str):
            try:
                value = next(it)
            except StopIteration:
                yield _Attr(_BAD_KEY, arg)
                return
            yield _Attr(arg, value)
        else:
            yield _Attr(_BAD_KEY, arg)


def _context_attrs(ctx: Optional[Context]) -> List[_Attr]:
    if ctx is None:
        return []
    attrs = []
    log_map = ctx.value(_LOG_MAP_KEY)
    if isinstance(log_map, _LogMap):
        attrs.extend(_Attr(k, v) for k, v in log_map.items() if isinstance(k, str))
    for key in _keys:
        value = ctx.value(key)
        if value is not None:
            attrs.append(_Attr(key, value))
    return attrs


class _Handler:
    def __init__(
        self,
        writer: Optional[TextIO],
        level: _Level,
        attrs: Tuple[_Attr, ...] = (),
        lock: Optional[threading.Lock] = None,
    ) -> None:
        self._writer = writer
        self._level = level
        self._attrs = attrs
        self._lock = lock or threading.Lock()

    def with_attrs(self, attrs: Iterable[_Attr]) -> "_Handler":
        return _Handler(self._writer, self._level, self._attrs + tuple(attrs), self._lock)

    def handle(self, ctx: Optional[Context], level: _Level, msg: str, args: Tuple[Any, ...]) -> None:
        if level < self._level:
            return
        now = datetime.now().astimezone().isoformat(timespec="milliseconds")
        head = [_Attr("time", now), _Attr("level", level.name), _Attr(MESSAGE_KEY, msg)]
        attrs = [*head, *self._attrs, *_to_attrs(args), *_context_attrs(ctx)]
        line = "{" + ",".join(_encode_attrs(attrs)) + "}\n"
        writer = self._writer if self._writer is not None else sys.stderr
        with self._lock:
            writer.write(line)
            flush = getattr(writer, "flush", None)
            if flush is not None:
                flush()


_default_handler = _Handler(None, _Level.INFO)


def initialize(writer: TextIO, cfg: Config, keys: Iterable[str] = ()) -> None:
    """Install the default JSON handler writing to ``writer``.

    ``keys`` are context keys whose values are added to every record.
    """
    global _default_handler
    _keys.extend(keys)
    level = _Level.DEBUG if cfg.app.log_level == "DEBUG" else _Level.INFO
    _default_handler = _Handler(writer, level)


def add_log_val_to_ctx(ctx: Context, key: str, val: Any) -> Context:
    """Return a context whose log records carry ``key`` with ``val``."""
    log_map = ctx.value(_LOG_MAP_KEY)
    if not isinstance(log_map, _LogMap):
        log_map = _LogMap()
    log_map.store(key, val)
    return ctx.with_value(_LOG_MAP_KEY, log_map)


def group(key: str, *args: Any) -> _Attr:
    """Return an attribute that nests ``args`` under ``key``."""
    return _Attr(key, tuple(_to_attrs(args)), group=True)


def info(ctx: Optional[Context], msg: str, *args: Any) -> None:
    _default_handler.handle(ctx, _Level.INFO, msg, args)


def debug(ctx: Optional[Context], msg: str, *args: Any) -> None:
    _default_handler.handle(ctx, _Level.DEBUG, msg, args)


def warn(ctx: Optional[Context], msg: str, *args: Any) -> None:
    _default_handler.handle(ctx, _Level.WARN, msg, args)


def error(ctx: Optional[Context], msg: str, *args: Any) -> None:
    _default_handler.handle(ctx, _Level.ERROR, msg, args)


def fatal(ctx: Optional[Context], msg: str, *args: Any) -> None:
    """Log at error level and exit with status 1."""
    error(ctx, msg, *args)
    raise SystemExit(1)


def bind(*args: Any) -> "Logger":
    """Return a logger on the current default handler carrying ``args``."""
    return Logger(_default_handler.with_attrs(_to_attrs(args)))


class Logger:
    """A logger with attributes bound to every record it writes."""

    __slots__ = ("_handler",)

    def __init__(self, handler: Optional[_Handler] = None) -> None:
        self._handler = handler if handler is not None else _default_handler

    def info(self, ctx: Optional[Context], msg: str, *args: Any) -> None:
        self._handler.handle(ctx, _Level.INFO, msg, args)

    def debug(self, ctx: Optional[Context], msg: str, *args: Any) -> None:
        self._handler.handle(ctx, _Level.DEBUG, msg, args)

    def warn(self, ctx: Optional[Context], msg: str, *args: Any) -> None:
        self._handler.handle(ctx, _Level.WARN, msg, args)

    def error(self, ctx: Optional[Context], msg: str, *args: Any) -> None:
        self._handler.handle(ctx, _Level.ERROR, msg, args)

    def bind(self, *args: Any) -> "Logger":
        return Logger(self._handler.with_attrs(_to_attrs(args)))

    def with_context(self, ctx: Context) -> "Logger":
        """Return a logger carrying the log values held by ``ctx``."""
        return Logger(self._handler.with_attrs(_context_attrs(ctx)))