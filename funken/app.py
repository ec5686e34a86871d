"""Application assembly: configuration, logging, infrastructure and repositories."""

import signal
import sys
from dataclasses import dataclass
from functools import cached_property
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, TextIO

from funken import logs, mongodb, pubsub
from funken.config import Config, new_config
from funken.context import Context, background
from funken.group_ng_filter_repo import GroupNGFilterRepository
from funken.group_repo import GroupRepository
from funken.member_group_repo import MemberGroupRepository
from funken.message_repo import MessageRepository

_SIGNALS = (signal.SIGINT, signal.SIGTERM)
_POLL_INTERVAL = 0.5

Connector = Callable[[str, Dict[str, Any]], Any]


@dataclass(frozen=True)
class _Hook:
    on_start: Optional[Callable[[Context], None]] = None
    on_stop: Optional[Callable[[Context], None]] = None


class Application:
    """Owns the service's components and the hooks that start and stop them.

    Components are created on first use; creating one registers its
    lifecycle hooks, so only the components in use are started and stopped.
    """

    def __init__(
        self,
        cfg: Config,
        jetstream_connector: Optional[Connector] = None,
        mongo_factory: Callable[[Config], Any] = mongodb.new_or_get_singleton,
        jetstream_factory: Callable[[Config, Connector], Any] = pubsub.new_or_get_singleton,
    ) -> None:
        self.cfg = cfg
        self._jetstream_connector = jetstream_connector
        self._mongo_factory = mongo_factory
        self._jetstream_factory = jetstream_factory
        self._hooks: List[_Hook] = []
        self._started = 0
        self._running = False

    def _check_can_append(self) -> None:
        if self._running:
            raise RuntimeError("cannot add lifecycle hooks while the application is running")

    @cached_property
    def mongo(self) -> Any:
        """The MongoDB client; pinged on start and closed on stop."""
        self._check_can_append()
        mdb = self._mongo_factory(self.cfg)
        self._hooks.append(_Hook(on_start=mdb.ping, on_stop=mdb.close))
        return mdb

    @cached_property
    def jetstream(self) -> Any:
        """The JetStream manager; its connection is closed on stop."""
        if self._jetstream_connector is None:
            raise RuntimeError("no NATS connector is configured")
        self._check_can_append()
        jsm = self._jetstream_factory(self.cfg, self._jetstream_connector)
        self._hooks.append(_Hook(on_stop=lambda ctx: jsm.close()))
        return jsm

    @cached_property
    def group_repository(self) -> GroupRepository:
        return GroupRepository(self.mongo)

    @cached_property
    def member_group_repository(self) -> MemberGroupRepository:
        return MemberGroupRepository(self.mongo)

    @cached_property
    def group_ng_filter_repository(self) -> GroupNGFilterRepository:
        return GroupNGFilterRepository(self.mongo)

    @cached_property
    def message_repository(self) -> MessageRepository:
        return MessageRepository(self.mongo)

    def start(self, ctx: Optional[Context] = None) -> None:
        """Run the start hooks in order; on failure stop what was started and re-raise."""
        if self._running:
            raise RuntimeError("application already started")
        ctx = ctx if ctx is not None else background()
        self._running = True
        for hook in self._hooks:
            if hook.on_start is not None:
                try:
                    hook.on_start(ctx)
                except Exception:
                    try:
                        self.stop(ctx)
                    except Exception as stop_exc:
                        logs.error(ctx, "failed to stop application", "error", str(stop_exc))
                    raise
            self._started += 1

    def stop(self, ctx: Optional[Context] = None) -> None:
        """Run the stop hooks of the started components in reverse order.

        Every hook runs; the first error raised by one is raised afterwards.
        """
        ctx = ctx if ctx is not None else background()
        started, self._started = self._hooks[: self._started], 0
        self._running = False
        first_error: Optional[BaseException] = None
        for hook in reversed(started):
            if hook.on_stop is None:
                continue
            try:
                hook.on_stop(ctx)
            except Exception as exc:
                if first_error is None:
                    first_error = exc
        if first_error is not None:
            raise first_error

    def run(self) -> None:
        """Start, wait for SIGINT or SIGTERM, then stop.

        Exits with status 1 when the application fails to start or stop.
        """
        ctx = background().with_cancel()
        previous = {sig: signal.signal(sig, lambda signum, frame: ctx.cancel()) for sig in _SIGNALS}
        try:
            try:
                self.start(ctx)
            except Exception as exc:
                logs.error(None, "failed to start application", "error", str(exc))
                raise SystemExit(1) from exc
            while not ctx.wait(_POLL_INTERVAL):
                pass
            try:
                self.stop(background())
            except Exception as exc:
                logs.error(None, "failed to stop application", "error", str(exc))
                raise SystemExit(1) from exc
        finally:
            for sig, handler in previous.items():
                signal.signal(sig, handler)


def build(
    cfg: Optional[Config] = None,
    writer: Optional[TextIO] = None,
    keys: Iterable[str] = (),
    jetstream_connector: Optional[Connector] = None,
) -> Application:
    """Load the configuration if none is given, set up logging and return the application."""
    cfg = cfg if cfg is not None else new_config()
    logs.initialize(writer if writer is not None else sys.stdout, cfg, list(keys))
    return Application(cfg, jetstream_connector=jetstream_connector)


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Run the service until it is told to stop."""
    build().run()
    return 0