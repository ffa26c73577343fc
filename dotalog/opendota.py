from __future__ import annotations

import json
import logging
import threading
import time
from typing import Any, Callable, Dict, List, Optional
from urllib.error import HTTPError, URLError
from urllib.parse import urlencode
from urllib.request import Request, urlopen

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.opendota.com/api"
# OpenDota allows ~60 requests/minute without a key
DEFAULT_MIN_INTERVAL_SECONDS = 1.1
TURBO_GAME_MODE = 23
HEROES_CACHE_TTL_SECONDS = 24 * 60 * 60


class OpenDotaError(RuntimeError):
    def __init__(self, message: str, status: Optional[int] = None, url: str = ""):
        super().__init__(message)
        self.status = status
        self.url = url


class RateLimiter:
    """
    Enforce a minimum gap between consecutive outbound calls.

    One limiter is shared by every call site of a client. Callers block in
    ``wait`` while holding the lock, so concurrent callers queue up behind
    each other rather than racing on the last-call timestamp.
    """

    def __init__(
        self,
        min_interval: float = DEFAULT_MIN_INTERVAL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.min_interval = min_interval
        self._clock = clock
        self._sleep = sleep
        self._lock = threading.Lock()
        self._last_call: Optional[float] = None

    def wait(self) -> float:
        """Block until the next call is allowed; returns seconds slept."""
        with self._lock:
            waited = 0.0
            now = self._clock()
            if self._last_call is not None:
                remaining = self.min_interval - (now - self._last_call)
                if remaining > 0:
                    self._sleep(remaining)
                    waited = remaining
                    now = self._clock()
            self._last_call = now
            return waited


class OpenDotaClient:
    HEADERS = {
        "User-Agent": "dotalog/0.3 (+https://github.com/dotalog)",
        "Accept": "application/json",
    }

    def __init__(
        self,
        base_url: str = DEFAULT_BASE_URL,
        api_key: Optional[str] = None,
        rate_limiter: Optional[RateLimiter] = None,
        timeout_seconds: int = 20,
        retry_429_pause_seconds: float = 10.0,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.rate_limiter = rate_limiter or RateLimiter()
        self.timeout_seconds = timeout_seconds
        self.retry_429_pause_seconds = retry_429_pause_seconds
        self._heroes_cache: Optional[List[Dict[str, Any]]] = None
        self._heroes_cached_at: Optional[float] = None

    def _build_url(self, path: str, params: Optional[Dict[str, Any]] = None) -> str:
        query = dict(params or {})
        if self.api_key:
            query["api_key"] = self.api_key
        url = f"{self.base_url}/{path.lstrip('/')}"
        if query:
            url = f"{url}?{urlencode(query)}"
        return url

    def _request_json(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        retry_429: bool = True,
    ) -> Any:
        url = self._build_url(path, params)
        self.rate_limiter.wait()
        req = Request(url, headers=self.HEADERS, method=method)
        try:
            with urlopen(req, timeout=self.timeout_seconds) as resp:
                body = resp.read().decode("utf-8")
        except HTTPError as exc:
            if exc.code == 429 and retry_429:
                logger.warning("OpenDota throttled %s %s; retrying once", method, path)
                time.sleep(self.retry_429_pause_seconds)
                return self._request_json(method, path, params, retry_429=False)
            raise OpenDotaError(f"OpenDota {method} {path} failed: {exc.code}", status=exc.code, url=url) from exc
        except (URLError, TimeoutError) as exc:
            raise OpenDotaError(f"OpenDota {method} {path} failed: {exc}", url=url) from exc

        if not body.strip():
            return None
        try:
            return json.loads(body)
        except ValueError as exc:
            raise OpenDotaError(f"OpenDota {method} {path} returned invalid JSON", url=url) from exc

    # --- Matches and parse jobs ---

    def fetch_match(self, match_id: int) -> Dict[str, Any]:
        payload = self._request_json("GET", f"matches/{match_id}")
        if not isinstance(payload, dict):
            raise OpenDotaError(f"OpenDota match {match_id} returned no data")
        return payload

    def request_parse(self, match_id: int) -> Optional[str]:
        """Ask OpenDota to parse a replay; returns the job id when one is issued."""
        payload = self._request_json("POST", f"request/{match_id}")
        job = payload.get("job") if isinstance(payload, dict) else None
        job_id = job.get("jobId") if isinstance(job, dict) else None
        return str(job_id) if job_id is not None else None

    def get_parse_job(self, job_id: str) -> Any:
        return self._request_json("GET", f"request/{job_id}")

    @staticmethod
    def is_job_pending(payload: Any) -> bool:
        """A job response still carrying a job id means the parse is not done yet."""
        if not isinstance(payload, dict):
            return False
        if payload.get("jobId") is not None:
            return True
        job = payload.get("job")
        return isinstance(job, dict) and job.get("jobId") is not None

    # --- Heroes ---

    def fetch_player_heroes(self, account_id: int, turbo_only: bool = True) -> List[Dict[str, Any]]:
        params = {"game_mode": TURBO_GAME_MODE} if turbo_only else None
        payload = self._request_json("GET", f"players/{account_id}/heroes", params)
        return payload if isinstance(payload, list) else []

    def fetch_heroes(self) -> List[Dict[str, Any]]:
        now = time.monotonic()
        if (
            self._heroes_cache is not None
            and self._heroes_cached_at is not None
            and now - self._heroes_cached_at < HEROES_CACHE_TTL_SECONDS
        ):
            return self._heroes_cache
        payload = self._request_json("GET", "heroes")
        self._heroes_cache = payload if isinstance(payload, list) else []
        self._heroes_cached_at = now
        return self._heroes_cache


def hero_name(heroes: List[Dict[str, Any]], hero_id: int) -> str:
    for hero in heroes:
        if hero.get("id") == hero_id:
            return hero.get("localized_name") or f"Hero #{hero_id}"
    return f"Hero #{hero_id}"
