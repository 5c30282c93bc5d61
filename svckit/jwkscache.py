"""A cache of a JSON Web Key Set.

The key set can come from:

- an HTTP(S) URL, fetched at start and fetched again when a caller asks for
  a key that is not in the cached set (at most once per refresh interval);
- a path to a local file, which is watched and reloaded when it changes;
- a JWKS given as-is, optionally base64-encoded.
"""

from __future__ import annotations

import base64
import binascii
import json
import os
import queue
import threading
import time
from datetime import timedelta
from typing import Any, Callable, Iterator, Optional, Union

import jwt
import requests

from svckit.fswatcher import FSWatcher, Options as WatcherOptions
from svckit.logger import NopLogger

DEFAULT_REQUEST_TIMEOUT = 30.0
DEFAULT_MIN_REFRESH_INTERVAL = 600.0

_POLL = 0.01


class JWKSCacheError(Exception):
    """Raised when the key set cannot be loaded."""


def _as_seconds(value: Union[timedelta, float]) -> float:
    return value.total_seconds() if isinstance(value, timedelta) else float(value)


def _parse_jwks(data: Union[bytes, str]) -> tuple[jwt.PyJWK, ...]:
    """Parse a JWK Set, or a single JWK, from JSON; raise ValueError if invalid."""
    try:
        document = json.loads(data)
    except ValueError as exc:
        raise ValueError(f"invalid JSON: {exc}") from exc

    if isinstance(document, dict) and "keys" in document:
        entries = document["keys"]
        if not isinstance(entries, list):
            raise ValueError("'keys' must be a list")
    elif isinstance(document, dict):
        entries = [document]
    else:
        raise ValueError("a JWK Set must be a JSON object")

    keys = []
    for entry in entries:
        if not isinstance(entry, dict):
            raise ValueError("each key must be a JSON object")
        try:
            keys.append(jwt.PyJWK(entry))
        except (jwt.PyJWTError, KeyError, TypeError, ValueError) as exc:
            raise ValueError(f"invalid key: {exc}") from exc
    return tuple(keys)


class KeySet:
    """An immutable snapshot of keys, optionally refreshed on a lookup miss."""

    def __init__(
        self,
        keys: tuple[jwt.PyJWK, ...] = (),
        refresh: Optional[Callable[[], tuple[jwt.PyJWK, ...]]] = None,
    ) -> None:
        self._keys = tuple(keys)
        self._refresh = refresh

    @property
    def keys(self) -> tuple[jwt.PyJWK, ...]:
        return self._keys

    def __len__(self) -> int:
        return len(self._keys)

    def __iter__(self) -> Iterator[jwt.PyJWK]:
        return iter(self._keys)

    @staticmethod
    def _find(keys: tuple[jwt.PyJWK, ...], kid: str) -> Optional[jwt.PyJWK]:
        return next((key for key in keys if key.key_id == kid), None)

    def lookup_key_id(self, kid: str) -> Optional[jwt.PyJWK]:
        """Return the key with id ``kid``, or None if there is none."""
        found = self._find(self._keys, kid)
        if found is None and self._refresh is not None:
            found = self._find(self._refresh(), kid)
        return found


class JWKSCache:
    """Holds a JWK Set loaded from a URL, a local file, or a literal value."""

    def __init__(self, location: str, logger: Any = None) -> None:
        self._location = location
        self._logger = logger if logger is not None else NopLogger()
        self._request_timeout = DEFAULT_REQUEST_TIMEOUT
        self._min_refresh_interval = DEFAULT_MIN_REFRESH_INTERVAL
        self._client: Any = None

        self._jwks: Optional[KeySet] = None
        self._lock = threading.RLock()
        self._refresh_lock = threading.Lock()
        self._last_fetch: Optional[float] = None

        self._state_lock = threading.Lock()
        self._running = False
        self._ready = threading.Event()
        self._init_error: Optional[BaseException] = None
        self._stop = threading.Event()

    def set_request_timeout(self, request_timeout: Union[timedelta, float]) -> None:
        """Set the timeout for network requests."""
        self._request_timeout = _as_seconds(request_timeout)

    def set_min_refresh_interval(self, min_refresh_interval: Union[timedelta, float]) -> None:
        """Set the minimum interval between refreshes caused by unknown key ids."""
        self._min_refresh_interval = _as_seconds(min_refresh_interval)

    def set_http_client(self, client: Any) -> None:
        """Use ``client`` for HTTP requests; it needs a ``get(url, timeout=...)`` method."""
        self._client = client

    def key_set(self) -> Optional[KeySet]:
        """Return the current key set, or None before it has been loaded."""
        with self._lock:
            return self._jwks

    def start(self, cancel: Optional[threading.Event] = None) -> None:
        """Load the key set, then block until ``cancel`` is set.

        Raises JWKSCacheError if the cache is already running or cannot be loaded.
        """
        with self._state_lock:
            if self._running:
                raise JWKSCacheError("cache is already running")
            self._running = True
            self._ready.clear()
            self._init_error = None
            self._stop = threading.Event()

        cancel = cancel if cancel is not None else threading.Event()
        try:
            try:
                self._init_cache(cancel)
            except Exception as exc:
                error = JWKSCacheError(f"failed to init cache: {exc}")
                error.__cause__ = exc
                self._init_error = error
                self._ready.set()
                raise error
            self._ready.set()
            cancel.wait()
        finally:
            self._stop.set()
            with self._state_lock:
                self._running = False

    def wait_for_cache_ready(self, timeout: Optional[float] = None) -> None:
        """Block until the first key set has been loaded, raising its load error if any.

        Raises TimeoutError if ``timeout`` seconds pass first.
        """
        if not self._ready.wait(timeout):
            raise TimeoutError("timed out waiting for the JWKS cache to be ready")
        if self._init_error is not None:
            raise self._init_error

    def _set_keys(self, keys: tuple[jwt.PyJWK, ...], refresh: Optional[Callable[[], tuple[jwt.PyJWK, ...]]]) -> None:
        with self._lock:
            self._jwks = KeySet(keys, refresh)

    def _init_cache(self, cancel: threading.Event) -> None:
        location = self._location
        if not location:
            raise ValueError("property 'location' must not be empty")

        if location.startswith("https://"):
            self._init_from_url(location, cancel)
            return
        if location.startswith("http://"):
            self._logger.warn(
                "Loading JWK from an HTTP endpoint without TLS: "
                "this is not recommended on production environments."
            )
            self._init_from_url(location, cancel)
            return

        if os.path.isfile(location):
            self._init_from_file(location)
            return

        # Treat the location as the JWKS itself, possibly base64-encoded.
        stripped = location.rstrip("=")
        try:
            data: Union[bytes, str] = base64.b64decode(
                stripped + "=" * (-len(stripped) % 4), validate=True
            )
        except (binascii.Error, ValueError):
            data = location
        try:
            keys = _parse_jwks(data)
        except ValueError:
            raise ValueError(
                "failed to parse property 'location': not a URL, path to local file, "
                "or JSON value (optionally base64-encoded)"
            ) from None
        self._set_keys(keys, None)

    def _fetch(self, url: str, cancel: Optional[threading.Event]) -> tuple[jwt.PyJWK, ...]:
        client = self._client
        outcome: dict[str, Any] = {}
        done = threading.Event()

        def request() -> None:
            try:
                outcome["response"] = client.get(url, timeout=self._request_timeout)
            except Exception as exc:
                outcome["error"] = exc
            finally:
                done.set()

        threading.Thread(target=request, daemon=True).start()
        deadline = time.monotonic() + self._request_timeout
        while not done.wait(_POLL):
            if cancel is not None and cancel.is_set():
                raise JWKSCacheError("request canceled")
            if time.monotonic() >= deadline:
                raise TimeoutError("context deadline exceeded")

        if "error" in outcome:
            raise outcome["error"]
        response = outcome["response"]
        status = getattr(response, "status_code", None)
        if status != 200:
            raise ValueError(f"failed to fetch {url}: status code {status}")
        return _parse_jwks(response.content)

    def _init_from_url(self, url: str, cancel: threading.Event) -> None:
        if self._client is None:
            self._client = requests.Session()
        try:
            keys = self._fetch(url, cancel)
        except Exception as exc:
            raise JWKSCacheError(f"failed to fetch JWKS: {exc}") from exc
        self._last_fetch = time.monotonic()
        self._set_keys(keys, lambda: self._refresh_remote(url))

    def _refresh_remote(self, url: str) -> tuple[jwt.PyJWK, ...]:
        with self._refresh_lock:
            current = self.key_set()
            current_keys = current.keys if current is not None else ()
            if self._stop.is_set():
                return current_keys
            now = time.monotonic()
            if self._last_fetch is not None and now - self._last_fetch < self._min_refresh_interval:
                return current_keys
            self._last_fetch = now
            try:
                keys = self._fetch(url, self._stop)
            except Exception as exc:
                self._logger.warnf("Error while refreshing JWKS cache: %s", exc)
                return current_keys
            self._set_keys(keys, lambda: self._refresh_remote(url))
            return keys

    def _load_file(self, path: str) -> None:
        try:
            with open(path, "rb") as handle:
                data = handle.read()
        except OSError as exc:
            raise ValueError(f"failed to read JWKS file: {exc}") from exc
        try:
            keys = _parse_jwks(data)
        except ValueError as exc:
            raise ValueError(f"failed to parse JWKS file: {exc}") from exc
        self._set_keys(keys, None)

    def _init_from_file(self, path: str) -> None:
        directory = os.path.dirname(os.path.abspath(path))
        stop = self._stop
        events: "queue.Queue[Any]" = queue.Queue()

        try:
            watcher = FSWatcher(WatcherOptions(targets=[directory]))
        except Exception as exc:
            self._logger.errorf("Error while watching for changes to the local JWKS file: %s", exc)
        else:
            def watch() -> None:
                try:
                    watcher.run(events, stop)
                except Exception as exc:
                    self._logger.errorf(
                        "Error while watching for changes to the local JWKS file: %s", exc
                    )

            threading.Thread(target=watch, daemon=True).start()

        self._logger.debug("Loading JWKS file from disk")
        self._load_file(path)

        def reload() -> None:
            while not stop.is_set():
                try:
                    events.get(timeout=_POLL)
                except queue.Empty:
                    continue
                self._logger.debug("Reloading JWKS file from disk")
                try:
                    self._load_file(path)
                except Exception as exc:
                    self._logger.errorf("Error reading JWKS from disk: %s", exc)

        threading.Thread(target=reload, daemon=True).start()