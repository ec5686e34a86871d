# funken

The service core of a group chat backend:

- **Configuration** from a `.env` file or the process environment
  (`funken.config`).
- **Models** for groups, group members, group NG (forbidden word) filters and
  messages, converted to and from MongoDB documents and JSON
  (`funken.models`).
- **Structured JSON logging** with values carried in a request context
  (`funken.logs`, `funken.context`).
- **MongoDB access**: a shared client and one repository per collection
  (`funken.mongodb`, `funken.group_repo`, `funken.group_ng_filter_repo`,
  `funken.member_group_repo`, `funken.message_repo`).
- **JetStream publish/subscribe** that creates streams and durable consumers
  on demand (`funken.pubsub`).
- **Application wiring** with start and stop hooks (`funken.app`).

## Installation

```
pip install .
```

To run the tests:

```
pip install ".[test]"
pytest
```

## Configuration

`funken.config.load_config(path, environ)` reads `environ` (the process
environment when `None`). If `path` names an existing `.env` file, its values
are applied on top of `environ`. Missing required settings and non-integer
numbers raise `funken.config.ConfigError`. `new_config()` does the same with
the `.env` file in the directory that contains the `funken` package.

The result is a frozen `Config` with the sections `app`, `mongo`, `nats` and
`jetstream`.

| Variable | Required | Default |
| --- | --- | --- |
| `APP_PORT` | yes | |
| `APP_LOG_LEVEL` | no | `DEBUG` |
| `MONGO_HOST` | yes | |
| `MONGO_PORT` | no | `27017` |
| `MONGO_DATABASE` | yes | |
| `MONGO_AUTH_DB` | yes | |
| `MONGO_TIMEOUT` (ms) | no | `30000` |
| `MONGO_CONN_TIMEOUT` (ms) | no | `30000` |
| `MONGO_POOL_SIZE` | no | `10` |
| `MONGO_MAX_IDLE_TIME` (ms) | no | `300000` |
| `MONGO_CONN_ATTEMPTS` | no | `3` |
| `MONGO_USERNAME` | yes | |
| `MONGO_PASSWORD` | yes | |
| `NATS_URL` | yes | |
| `NATS_NAME` | yes | |
| `NATS_MAX_RECONNECT` | no | `60` |
| `NATS_RECONNECT_WAIT` (ms) | no | `2000` |
| `NATS_RECONNECT_JITTER` (ms) | no | `100` |
| `NATS_RECONNECT_JITTER_TLS` (ms) | no | `1000` |
| `NATS_TIMEOUT` (ms) | no | `2000` |
| `NATS_PING_INTERVAL` (minutes) | no | `2` |
| `NATS_PINGS_OUT` | no | `2` |
| `JS_DOMAIN` | yes | |
| `JS_API_TIMEOUT` (s) | no | `5` |
| `JS_PUBLISH_ASYNC_TIMEOUT` (s) | no | `5` |
| `JS_PUBLISH_ASYNC_MAX_PENDING` | no | `10` |

A minimal `.env`:

```
APP_PORT=8080
MONGO_HOST=localhost
MONGO_DATABASE=funken
MONGO_AUTH_DB=admin
MONGO_USERNAME=user
MONGO_PASSWORD=password
NATS_URL=nats://localhost:4222
NATS_NAME=funken
JS_DOMAIN=hub
```

```python
from funken.config import load_config

cfg = load_config(".env", {})
print(cfg.mongo.database)
```

## Logging

```python
import sys
from funken import logs
from funken.context import background

logs.initialize(sys.stdout, cfg, [])
ctx = logs.add_log_val_to_ctx(background(), "request_id", "r-1")
logs.info(ctx, "group created", "group_id", "g-1")
```

Each record is one JSON line with `time`, `level` and `message`, then the
key/value arguments, then the values stored in the context. The level
threshold is debug when `APP_LOG_LEVEL` is `DEBUG`, info otherwise. The
`keys` given to `initialize` name context keys whose values are added to
every record. `logs.group(key, ...)` nests attributes under one key,
`logs.fatal` logs at error level and raises `SystemExit(1)`.
`logs.bind(...)` returns a `Logger` with fixed fields;
`Logger.with_context(ctx)` folds a context's log values into a new logger.

`funken.context.Context` is an immutable chain of values
(`with_value`, `value`) with cancellation (`with_cancel`, `cancel`,
`cancelled`, `wait`); `background()` is the empty root.

## Repositories

Every repository takes a `funken.mongodb.MongoDB` and works on model objects
from `funken.models`:

```python
from funken.mongodb import new_or_get_singleton
from funken.member_group_repo import MemberGroupRepository

db = new_or_get_singleton(cfg)
members = MemberGroupRepository(db)
members.add_members("g-1", ["m-1", "m-2"])   # members already in the group are skipped
print(members.count_members_by_group_id("g-1"))
```

- `GroupRepository`: find one / find many by conditions, create,
  update by id (returns the updated group), delete by id, `check_exist`.
- `GroupNGFilterRepository`: the same plus `create_batch` (an empty batch
  raises `ValueError`) and `delete_by_group_ids`.
- `MemberGroupRepository`: list member ids, count, add and remove members.
- `MessageRepository`: count, find one / find many, create, update and
  delete by id.

Lookups and updates that match nothing raise
`funken.mongodb.NoDocumentsError`; `GroupRepository.check_exist` returns
`False` instead. Extra keyword arguments of the `find_*` and `count_*`
methods go to the underlying pymongo call.

## Publish/subscribe

`funken.pubsub.JetStreamManager(js, conn)` publishes JSON payloads (model
objects are encoded with `to_json()`) with optional headers, pauses, resumes
and deletes consumers, deletes streams, and subscribes handlers to subjects.
When subscribing, the stream and the durable consumer named in
`SubscribeParams` are created or extended as needed; `subscribe` blocks until
its context is cancelled. A handler that raises gets its message negatively
acknowledged with a three second delay. Empty stream or consumer names raise
`InvalidStreamError` or `InvalidConsumerError`, and a subject bound to a
different stream raises `InvalidStreamError`.

`new_or_get_singleton(cfg, connector)` creates the shared manager:
`connector(url, options)` must open the connection, whose
`jetstream(domain, options)` returns the JetStream client. The options come
from `nats_connect_options(cfg)` and `jetstream_options(cfg)`; the stream and
consumer settings from `stream_config` and `consumer_config`.

## Running the service

```
funken
```

`funken.app.build(cfg, writer, keys, jetstream_connector)` loads the
configuration when none is given, sets up logging (to standard output by
default) and returns an `Application`. Its components — `mongo`,
`jetstream` and the four repositories — are created on first access, and
creating `mongo` or `jetstream` registers their hooks: MongoDB is pinged on
start and closed on stop, the JetStream connection closed on stop.
`Application.run()` starts, waits for SIGINT or SIGTERM, then stops, exiting
with status 1 if either fails.

```python
from funken.app import build

app = build()
app.group_repository      # registers the MongoDB hooks
app.run()
```

## What this package does not do

- It has no HTTP or other API server; `APP_PORT` is read but not used.
- It bundles no NATS client. JetStream works only through a `connector`
  you supply that provides the client methods listed in `funken.pubsub`.
- The `funken` command itself touches no component, so it connects to
  nothing: it loads the configuration, sets up logging and waits for a
  signal.