import base64
import io
import threading
import time
from dataclasses import dataclass

import pytest

from svckit.jwkscache import JWKSCache, JWKSCacheError
from svckit.logger import Logger

TEST_JWKS1 = '{"keys":[{"kid":"mykey","alg":"RS256","kty":"RSA","use":"sig","e":"AQAB","n":"3I2mdIK4mRRu-ywMrYjUZzBxt0NlAVLrMhGlaJsby7PWTMiLpZVip4SBD9GwnCU0TGFD7k2-7tfs0y9U6WV7MwgCjc9m_DUUGbE-kKjEU7JYkLzYlndys-6xuhD4Jf1hu9AZVdfXftpWSy_NNg6fVwTH4nckOAbOSL1hXToOYWQcDDW95Rhw3U4z04PqssEpRKn5KGBuTahNNNiZcWns99pChpLTxgdm93LjMBI1KCGBpOaz7fcQJ9V3c6rSwMKyY3IPm1LwS6PIs7xb2ZJ0Eb8A6MtCkGhgNsodpkxhqKbqtxI-KqTuZy9g4jb8WKjJq9lB9q-HPHoQqIEDom6P8w"}]}'
TEST_JWKS2 = '{"keys":[{"kid":"mykey","alg":"RS256","kty":"RSA","use":"sig","e":"AQAB","n":"3I2mdIK4mRRu-ywMrYjUZzBxt0NlAVLrMhGlaJsby7PWTMiLpZVip4SBD9GwnCU0TGFD7k2-7tfs0y9U6WV7MwgCjc9m_DUUGbE-kKjEU7JYkLzYlndys-6xuhD4Jf1hu9AZVdfXftpWSy_NNg6fVwTH4nckOAbOSL1hXToOYWQcDDW95Rhw3U4z04PqssEpRKn5KGBuTahNNNiZcWns99pChpLTxgdm93LjMBI1KCGBpOaz7fcQJ9V3c6rSwMKyY3IPm1LwS6PIs7xb2ZJ0Eb8A6MtCkGhgNsodpkxhqKbqtxI-KqTuZy9g4jb8WKjJq9lB9q-HPHoQqIEDom6P8w"},{"alg":"RS256","kty":"RSA","use":"sig","n":"yeNlzlub94YgerT030codqEztjfU_S6X4DbDA_iVKkjAWtYfPHDzz_sPCT1Axz6isZdf3lHpq_gYX4Sz-cbe4rjmigxUxr-FgKHQy3HeCdK6hNq9ASQvMK9LBOpXDNn7mei6RZWom4wo3CMvvsY1w8tjtfLb-yQwJPltHxShZq5-ihC9irpLI9xEBTgG12q5lGIFPhTl_7inA1PFK97LuSLnTJzW0bj096v_TMDg7pOWm_zHtF53qbVsI0e3v5nmdKXdFf9BjIARRfVrbxVxiZHjU6zL6jY5QJdh1QCmENoejj_ytspMmGW7yMRxzUqgxcAqOBpVm0b-_mW3HoBdjQ","e":"AQAB","kid":"testkey"}]}'


@dataclass
class _Response:
    status_code: int
    content: bytes = b""


class _FakeClient:
    def __init__(self, handler):
        self.handler = handler
        self.calls = 0

    def get(self, url, timeout=None):
        self.calls += 1
        return self.handler(url)


class _Runner:
    def __init__(self, cache):
        self.cache = cache
        self.cancel = threading.Event()
        self.error = None
        self.returned = False
        self.thread = threading.Thread(target=self._run, daemon=True)
        self.thread.start()

    def _run(self):
        try:
            self.cache.start(self.cancel)
            self.returned = True
        except BaseException as exc:
            self.error = exc

    def stop(self):
        self.cancel.set()
        self.thread.join(5)


@pytest.fixture
def run_cache():
    runners = []

    def start(cache):
        runner = _Runner(cache)
        runners.append(runner)
        return runner

    yield start
    for runner in runners:
        runner.stop()


@pytest.fixture
def log():
    logger = Logger("jwkscache-test")
    logger.set_output(io.StringIO())
    return logger


def _causes(exc):
    while exc is not None:
        yield exc
        exc = exc.__cause__


def test_init_with_value(run_cache, log):
    cache = JWKSCache(TEST_JWKS1, log)
    run_cache(cache)
    cache.wait_for_cache_ready(5)

    key_set = cache.key_set()
    assert len(key_set) == 1
    key = key_set.lookup_key_id("mykey")
    assert key is not None
    assert key.key_id == "mykey"


def test_init_with_base64_value(run_cache, log):
    cache = JWKSCache(base64.b64encode(TEST_JWKS1.encode()).decode(), log)
    run_cache(cache)
    cache.wait_for_cache_ready(5)

    key_set = cache.key_set()
    assert len(key_set) == 1
    assert key_set.lookup_key_id("mykey").key_id == "mykey"


def test_init_with_unpadded_base64_value(run_cache, log):
    encoded = base64.b64encode(TEST_JWKS2.encode()).decode().rstrip("=")
    cache = JWKSCache(encoded, log)
    run_cache(cache)
    cache.wait_for_cache_ready(5)

    assert len(cache.key_set()) == 2
    assert cache.key_set().lookup_key_id("testkey").key_id == "testkey"


def test_unknown_key_id_returns_none(run_cache, log):
    cache = JWKSCache(TEST_JWKS1, log)
    run_cache(cache)
    cache.wait_for_cache_ready(5)
    assert cache.key_set().lookup_key_id("testkey") is None


def test_init_with_local_file_and_reload(tmp_path, run_cache, log):
    path = tmp_path / "jwks.json"
    path.write_text(TEST_JWKS1)

    cache = JWKSCache(str(path), log)
    run_cache(cache)
    cache.wait_for_cache_ready(5)

    key_set = cache.key_set()
    assert len(key_set) == 1
    assert key_set.lookup_key_id("mykey") is not None

    time.sleep(1)
    path.write_text(TEST_JWKS2)

    deadline = time.monotonic() + 5
    while time.monotonic() < deadline and len(cache.key_set()) != 2:
        time.sleep(0.05)

    key_set = cache.key_set()
    assert len(key_set) == 2
    assert key_set.lookup_key_id("mykey").key_id == "mykey"
    assert key_set.lookup_key_id("testkey").key_id == "testkey"


def test_init_with_invalid_local_file(tmp_path, run_cache, log):
    path = tmp_path / "jwks.json"
    path.write_text("not json")

    cache = JWKSCache(str(path), log)
    runner = run_cache(cache)
    with pytest.raises(JWKSCacheError, match="failed to parse JWKS file"):
        cache.wait_for_cache_ready(5)
    runner.thread.join(5)
    assert isinstance(runner.error, JWKSCacheError)


def test_init_with_http_client(run_cache):
    output = io.StringIO()
    logger = Logger("jwkscache-http-test")
    logger.set_output(output)

    def handler(url):
        if not url.endswith("/jwks.json"):
            return _Response(404)
        return _Response(200, TEST_JWKS1.encode())

    cache = JWKSCache("http://localhost/jwks.json", logger)
    cache.set_http_client(_FakeClient(handler))
    run_cache(cache)
    cache.wait_for_cache_ready(5)

    key_set = cache.key_set()
    assert len(key_set) == 1
    assert key_set.lookup_key_id("mykey").key_id == "mykey"
    assert "without TLS" in output.getvalue()


def test_start_and_wait_for_init(run_cache, log):
    cache = JWKSCache(TEST_JWKS1, log)
    runner = run_cache(cache)
    cache.wait_for_cache_ready(5)

    runner.stop()
    assert runner.returned is True
    assert runner.error is None


def test_start_and_init_fails(run_cache, log):
    cache = JWKSCache("https://localhost/jwks.json", log)
    cache.set_http_client(_FakeClient(lambda url: _Response(500)))
    runner = run_cache(cache)

    with pytest.raises(JWKSCacheError, match="failed to fetch JWKS") as info:
        cache.wait_for_cache_ready(5)

    runner.stop()
    assert runner.error is info.value


def test_start_and_init_times_out(run_cache, log):
    def slow(url):
        time.sleep(1)
        return _Response(500)

    cache = JWKSCache("https://localhost/jwks.json", log)
    cache.set_http_client(_FakeClient(slow))
    cache.set_request_timeout(0.2)
    runner = run_cache(cache)

    with pytest.raises(JWKSCacheError, match="failed to fetch JWKS") as info:
        cache.wait_for_cache_ready(5)
    assert any(isinstance(exc, TimeoutError) for exc in _causes(info.value))

    runner.stop()
    assert runner.error is info.value


def test_refresh_on_unknown_key(run_cache, log):
    bodies = [TEST_JWKS1, TEST_JWKS2]

    client = _FakeClient(lambda url: _Response(200, bodies[min(client.calls, 2) - 1].encode()))
    cache = JWKSCache("https://localhost/jwks.json", log)
    cache.set_http_client(client)
    cache.set_min_refresh_interval(0)
    run_cache(cache)
    cache.wait_for_cache_ready(5)

    assert len(cache.key_set()) == 1
    key = cache.key_set().lookup_key_id("testkey")
    assert key is not None
    assert key.key_id == "testkey"
    assert client.calls == 2
    assert len(cache.key_set()) == 2


def test_no_refresh_within_min_interval(run_cache, log):
    bodies = [TEST_JWKS1, TEST_JWKS2]
    client = _FakeClient(lambda url: _Response(200, bodies[min(client.calls, 2) - 1].encode()))
    cache = JWKSCache("https://localhost/jwks.json", log)
    cache.set_http_client(client)
    run_cache(cache)
    cache.wait_for_cache_ready(5)

    assert cache.key_set().lookup_key_id("testkey") is None
    assert client.calls == 1


def test_empty_location_fails(run_cache, log):
    cache = JWKSCache("", log)
    run_cache(cache)
    with pytest.raises(JWKSCacheError, match="must not be empty"):
        cache.wait_for_cache_ready(5)


def test_invalid_location_fails(run_cache, log):
    cache = JWKSCache("not a jwks", log)
    run_cache(cache)
    with pytest.raises(JWKSCacheError, match="failed to parse property 'location'"):
        cache.wait_for_cache_ready(5)


def test_start_twice_fails(run_cache, log):
    cache = JWKSCache(TEST_JWKS1, log)
    run_cache(cache)
    cache.wait_for_cache_ready(5)
    with pytest.raises(JWKSCacheError, match="already running"):
        cache.start(threading.Event())


def test_wait_without_start_times_out(log):
    cache = JWKSCache(TEST_JWKS1, log)
    with pytest.raises(TimeoutError):
        cache.wait_for_cache_ready(0.05)
    assert cache.key_set() is None