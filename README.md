# svckit

Building blocks for long-running Python services: time-ordered event
queues, event batching, coalescing rate limiting, file watching, structured
logging, metadata decoding and a JSON Web Key Set cache.

## Modules

| Module | Purpose |
| --- | --- |
| `svckit.grpccodes` | Map gRPC status codes (`Code`) to HTTP statuses and back. |
| `svckit.queue` | A keyed, time-ordered `Queue` and a background `Processor` that runs a callback on each item when its scheduled time comes. Includes `RealClock` and a manually advanced `FakeClock`. |
| `svckit.batcher` | `Batcher` holds keyed events for an interval, restarting the timer when the same key arrives again, then delivers the latest value to every subscribed queue. |
| `svckit.ratelimiting` | `Coalescing` rate limiter (`RateLimiter` interface) with exponential back-off, configured through `OptionsCoalescing`. |
| `svckit.fswatcher` | `FSWatcher` watches directories or files and puts one batched notification per changed path on a queue. |
| `svckit.logger` | Named structured loggers writing text or JSON lines, with log types, extra fields and a discarding `NopLogger`. |
| `svckit.log_options` | `Options` for level, JSON output and app id, applied to every registered logger at once. |
| `svckit.bytesize` | `ByteSize` quantities such as `100`, `1Ki`, `1000k` or `1Gi`. |
| `svckit.duration` | `Duration` with JSON round-tripping and ISO-8601 output, plus `parse_duration` and `format_duration`. |
| `svckit.metadata` | Case-insensitive property lookup with aliases, and decoding of string maps into dataclasses. |
| `svckit.jwkscache` | `JWKSCache` keeps a JSON Web Key Set loaded from a URL, a local file (reloaded on change) or an inline, optionally base64-encoded, value. |

## Installing

```
pip install svckit
```

To run the tests:

```
pip install "svckit[test]"
pytest
```

## Examples

### Status code mapping

```python
from svckit.grpccodes import Code, code_from_http_status, http_status_from_code

code_from_http_status(404)            # Code.NOT_FOUND
code_from_http_status(204)            # Code.OK (any 2xx)
http_status_from_code(Code.ABORTED)   # 409
```

Codes without a mapping give 500 in one direction and `Code.UNKNOWN` in the
other.

### Delayed processing

```python
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from svckit.queue import Processor

@dataclass(eq=False)
class Job:
    key: str
    scheduled_time: datetime

processor = Processor(lambda job: print("run", job.key))
now = datetime.now(timezone.utc)
processor.enqueue(Job("a", now + timedelta(seconds=1)))
processor.enqueue(Job("b", now + timedelta(milliseconds=200)))
processor.dequeue("a")
processor.close()
```

An item enqueued with a key already queued replaces it. After `close`,
`enqueue` and `dequeue` raise `ProcessorStoppedError`.

### Batching and rate limiting

```python
import queue
import threading

from svckit.batcher import Batcher
from svckit.ratelimiting import OptionsCoalescing, new_coalescing

events = queue.Queue()
batcher = Batcher(0.5)
batcher.subscribe(events)
batcher.batch("config.yaml", "changed")   # delivered 0.5s after the last batch for this key

limiter = new_coalescing(OptionsCoalescing(initial_delay=1, max_delay=5))
out = queue.Queue()
stop = threading.Event()
threading.Thread(target=limiter.run, args=(out, stop), daemon=True).start()
limiter.add()   # the first event goes through at once; later ones are coalesced
```

The rate limiter puts `None` on the queue for each event it lets through.
Invalid options raise `ValueError`.

### Watching files

```python
import queue
import threading

from svckit.fswatcher import FSWatcher, Options

watcher = FSWatcher(Options(targets=["/etc/myservice"], interval=0.5))
changes = queue.Queue()
stop = threading.Event()
threading.Thread(target=watcher.run, args=(changes, stop), daemon=True).start()
```

A missing target raises `FileNotFoundError`; a negative interval raises
`ValueError`; calling `run` twice raises `RuntimeError`.

### Logging

```python
from svckit.logger import new_logger, to_log_level

log = new_logger("orders")
log.enable_json_output(True)
log.set_app_id("checkout")
log.set_output_level(to_log_level("debug"))

log.info("service started")
log.with_fields({"order": 42}).infof("processing %s", "order")
log.with_log_type("request").info("GET /orders")
```

`new_logger` returns the same logger for the same name. `fatal` and `fatalf`
log, then raise `SystemExit(1)`. Options for all registered loggers:

```python
from svckit.log_options import apply_options_to_loggers, default_options

options = default_options()
options.set_output_level("warn")
options.set_app_id("checkout")
apply_options_to_loggers(options)
```

An unknown level name raises `ValueError`.

### Sizes and durations

```python
from datetime import timedelta

from svckit.bytesize import parse_quantity
from svckit.duration import Duration, parse_duration

parse_quantity("1Ki").get_bytes()    # 1024
str(parse_quantity("1000k"))         # "1M"
parse_duration("1h30m")              # timedelta(seconds=5400)
Duration(timedelta(hours=50, minutes=20, seconds=15)).to_iso_string()  # "P2DT2H20M15S"
```

### Metadata

```python
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Optional

from svckit.bytesize import ByteSize
from svckit.metadata import Properties, decode_metadata

@dataclass
class Settings:
    timeout: timedelta = field(default=timedelta(0), metadata={"aliases": "requestTimeout"})
    hosts: list[str] = field(default_factory=list)
    verbose: bool = False
    max_size: Optional[ByteSize] = field(default=None, metadata={"key": "maxSize"})

settings = Settings()
decode_metadata({"RequestTimeout": "17", "hosts": "a,b", "verbose": "on", "maxSize": "1Gi"}, settings)

Properties({"Timeout": "5s"}).get_property("timeout")   # "5s"
```

Durations accept `"6m"` or plain seconds such as `"17"`; booleans accept
`y`, `yes`, `true`, `t`, `on` and `1`; lists are split on commas.

### JWKS cache

```python
import threading

from svckit.jwkscache import JWKSCache
from svckit.logger import new_logger

cache = JWKSCache("https://auth.example.com/.well-known/jwks.json", new_logger("auth"))
stop = threading.Event()
threading.Thread(target=cache.start, args=(stop,), daemon=True).start()

cache.wait_for_cache_ready(10)
key = cache.key_set().lookup_key_id("mykey")
```

For a URL, looking up an unknown key id fetches the set again, at most once
per `set_min_refresh_interval`. Load failures raise `JWKSCacheError`.

## What it does not do

svckit is a library only: it has no command-line tool and no server. The
status code module only maps numbers; it does not make gRPC or HTTP calls.
Loggers write to a text stream and do not rotate or manage log files.