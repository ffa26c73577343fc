import json
from io import BytesIO
from urllib.error import HTTPError, URLError
from urllib.parse import parse_qs, urlparse

import pytest

import dotalog.opendota as opendota_module
from dotalog.opendota import (
    HEROES_CACHE_TTL_SECONDS,
    OpenDotaClient,
    OpenDotaError,
    RateLimiter,
    hero_name,
)


class FakeClock:
    def __init__(self):
        self.now = 100.0
        self.sleeps = []

    def __call__(self):
        return self.now

    def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += seconds


@pytest.fixture
def client():
    return OpenDotaClient(base_url="https://od.test/api", rate_limiter=RateLimiter(min_interval=0))


def _respond(payloads, seen=None):
    """urlopen stand-in returning each payload in turn (exceptions are raised)."""
    queue = list(payloads)

    def fake_urlopen(req, timeout=20):
        if seen is not None:
            seen.append(req)
        item = queue.pop(0)
        if isinstance(item, Exception):
            raise item
        body = item if isinstance(item, bytes) else json.dumps(item).encode("utf-8")
        return BytesIO(body)

    return fake_urlopen


# --- Rate limiter ---

def test_rate_limiter_first_call_is_free():
    clock = FakeClock()
    limiter = RateLimiter(min_interval=1.1, clock=clock, sleep=clock.sleep)

    assert limiter.wait() == 0.0
    assert clock.sleeps == []


def test_rate_limiter_spaces_back_to_back_calls():
    clock = FakeClock()
    limiter = RateLimiter(min_interval=1.1, clock=clock, sleep=clock.sleep)

    limiter.wait()
    clock.now += 0.5
    waited = limiter.wait()

    assert waited == pytest.approx(0.6)
    assert clock.sleeps == [pytest.approx(0.6)]


def test_rate_limiter_no_wait_after_idle_gap():
    clock = FakeClock()
    limiter = RateLimiter(min_interval=1.1, clock=clock, sleep=clock.sleep)

    limiter.wait()
    clock.now += 5
    assert limiter.wait() == 0.0


def test_every_request_goes_through_limiter(monkeypatch):
    class CountingLimiter(RateLimiter):
        calls = 0

        def wait(self):
            CountingLimiter.calls += 1
            return 0.0

    client = OpenDotaClient(rate_limiter=CountingLimiter())
    monkeypatch.setattr(opendota_module, "urlopen", _respond([{"players": []}, {"job": {"jobId": 1}}, []]))

    client.fetch_match(1)
    client.request_parse(1)
    client.fetch_player_heroes(2)

    assert CountingLimiter.calls == 3


# --- Requests ---

def test_api_key_is_appended(monkeypatch):
    seen = []
    client = OpenDotaClient(base_url="https://od.test/api/", api_key="secret", rate_limiter=RateLimiter(0))
    monkeypatch.setattr(opendota_module, "urlopen", _respond([{"match_id": 5}], seen))

    client.fetch_match(5)

    url = urlparse(seen[0].full_url)
    assert url.path == "/api/matches/5"
    assert parse_qs(url.query) == {"api_key": ["secret"]}


def test_request_parse_returns_job_id(client, monkeypatch):
    seen = []
    monkeypatch.setattr(opendota_module, "urlopen", _respond([{"job": {"jobId": 987}}], seen))

    assert client.request_parse(7654321) == "987"
    assert seen[0].get_method() == "POST"
    assert seen[0].full_url.endswith("/request/7654321")


def test_request_parse_without_job(client, monkeypatch):
    monkeypatch.setattr(opendota_module, "urlopen", _respond([{}]))
    assert client.request_parse(1) is None


def test_player_heroes_turbo_filter(client, monkeypatch):
    seen = []
    monkeypatch.setattr(opendota_module, "urlopen", _respond([[{"hero_id": 1}], []], seen))

    assert client.fetch_player_heroes(42) == [{"hero_id": 1}]
    client.fetch_player_heroes(42, turbo_only=False)

    assert parse_qs(urlparse(seen[0].full_url).query) == {"game_mode": ["23"]}
    assert urlparse(seen[1].full_url).query == ""


def test_429_retries_once(client, monkeypatch):
    pauses = []
    throttled = HTTPError("https://od.test", 429, "Too Many Requests", hdrs=None, fp=BytesIO(b"{}"))
    monkeypatch.setattr(opendota_module, "urlopen", _respond([throttled, {"match_id": 1}]))
    monkeypatch.setattr(opendota_module.time, "sleep", lambda seconds: pauses.append(seconds))

    assert client.fetch_match(1) == {"match_id": 1}
    assert pauses == [client.retry_429_pause_seconds]


def test_second_429_raises(client, monkeypatch):
    def throttled():
        return HTTPError("https://od.test", 429, "Too Many Requests", hdrs=None, fp=BytesIO(b"{}"))

    monkeypatch.setattr(opendota_module, "urlopen", _respond([throttled(), throttled()]))
    monkeypatch.setattr(opendota_module.time, "sleep", lambda *_: None)

    with pytest.raises(OpenDotaError) as exc_info:
        client.fetch_match(1)
    assert exc_info.value.status == 429


def test_http_error_is_wrapped(client, monkeypatch):
    missing = HTTPError("https://od.test", 404, "Not Found", hdrs=None, fp=BytesIO(b"{}"))
    monkeypatch.setattr(opendota_module, "urlopen", _respond([missing]))

    with pytest.raises(OpenDotaError) as exc_info:
        client.fetch_match(1)
    assert exc_info.value.status == 404
    assert "matches/1" in exc_info.value.url


def test_network_error_is_wrapped(client, monkeypatch):
    monkeypatch.setattr(opendota_module, "urlopen", _respond([URLError("connection refused")]))

    with pytest.raises(OpenDotaError) as exc_info:
        client.get_parse_job("1")
    assert exc_info.value.status is None


def test_invalid_json_raises(client, monkeypatch):
    monkeypatch.setattr(opendota_module, "urlopen", _respond([b"<html>oops</html>"]))

    with pytest.raises(OpenDotaError):
        client.fetch_match(1)


def test_fetch_match_requires_object(client, monkeypatch):
    monkeypatch.setattr(opendota_module, "urlopen", _respond([b""]))

    with pytest.raises(OpenDotaError):
        client.fetch_match(1)


# --- Parse job polling ---

@pytest.mark.parametrize(
    "payload, pending",
    [
        ({"jobId": 5}, True),
        ({"job": {"jobId": 5}}, True),
        (None, False),
        ({}, False),
        ([], False),
        ({"job": None}, False),
    ],
)
def test_is_job_pending(payload, pending):
    assert OpenDotaClient.is_job_pending(payload) is pending


# --- Heroes ---

def test_heroes_are_cached(client, monkeypatch):
    seen = []
    heroes = [{"id": 1, "localized_name": "Anti-Mage"}]
    monkeypatch.setattr(opendota_module, "urlopen", _respond([heroes, heroes], seen))

    assert client.fetch_heroes() == heroes
    assert client.fetch_heroes() == heroes
    assert len(seen) == 1

    client._heroes_cached_at -= HEROES_CACHE_TTL_SECONDS + 1
    client.fetch_heroes()
    assert len(seen) == 2


def test_hero_name_lookup():
    heroes = [{"id": 1, "localized_name": "Anti-Mage"}, {"id": 2, "localized_name": ""}]

    assert hero_name(heroes, 1) == "Anti-Mage"
    assert hero_name(heroes, 2) == "Hero #2"
    assert hero_name(heroes, 3) == "Hero #3"
