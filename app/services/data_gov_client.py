from __future__ import annotations

import json
import logging
import threading
import time
from dataclasses import dataclass
from typing import Any
from urllib.error import HTTPError, URLError
from urllib.parse import urlencode, urlparse, urlunparse
from urllib.request import Request, urlopen

from app.models.schemas import CanonicalRecord
from app.services.cache import MISS, ResponseCache
from app.services.errors import UpstreamUnavailableError
from app.services.normalization import normalize_records
from app.services.region_codes import STATE_NAMES, normalize_name

logger = logging.getLogger(__name__)

STATES_CACHE_KEY = "mgnrega:states:list"


def _append_params(url: str, params: dict[str, str]) -> str:
    parsed = urlparse(url)
    query = parsed.query
    extra = urlencode(params)
    query = f"{query}&{extra}" if query else extra
    return urlunparse((parsed.scheme, parsed.netloc, parsed.path, parsed.params, query, parsed.fragment))


def records_cache_key(state_name: str, fin_year: str, district_name: str | None = None) -> str:
    return f"mgnrega:{normalize_name(state_name)}:{fin_year.strip()}:{normalize_name(district_name) or 'all'}"


@dataclass(frozen=True)
class DataGovConfig:
    endpoint_url: str
    api_key: str | None
    timeout_sec: float = 30.0
    max_retries: int = 1
    page_size: int = 100
    requests_per_sec: float = 5.0
    records_cache_ttl_sec: int = 3600
    states_cache_ttl_sec: int = 86400
    latest_period: str = "2024-2025"


class DataGovClient:
    """Client for the data.gov.in district-wise programme performance resource."""

    def __init__(self, config: DataGovConfig, cache: ResponseCache):
        self.config = config
        self.cache = cache
        self._lock = threading.Lock()
        self._next_allowed_at = 0.0

    def is_configured(self) -> bool:
        return bool(self.config.endpoint_url and self.config.api_key)

    def fetch_records(
        self,
        state_name: str,
        fin_year: str,
        district_name: str | None = None,
    ) -> list[CanonicalRecord]:
        cache_key = records_cache_key(state_name, fin_year, district_name)
        cached = self.cache.get(cache_key)
        if cached is not MISS:
            logger.info("upstream_cache_hit key=%s", cache_key)
            return [CanonicalRecord(**row) for row in cached]

        if not self.is_configured():
            raise UpstreamUnavailableError("upstream data source is not configured")

        raw_records = self._fetch_with_retry(state_name, fin_year, district_name)
        records = normalize_records(raw_records)
        logger.info(
            "upstream_fetch state=%s fin_year=%s district=%s records=%s",
            normalize_name(state_name),
            fin_year,
            normalize_name(district_name) or "all",
            len(records),
        )
        if records:
            self.cache.set(cache_key, [r.model_dump() for r in records], self.config.records_cache_ttl_sec)
        return records

    def fetch_states_list(self) -> list[str]:
        cached = self.cache.get(STATES_CACHE_KEY)
        if cached is not MISS:
            return cached
        states = list(STATE_NAMES)
        self.cache.set(STATES_CACHE_KEY, states, self.config.states_cache_ttl_sec)
        return states

    def fetch_sub_regions_list(self, state_name: str) -> list[str]:
        records = self.fetch_records(state_name, self.config.latest_period)
        seen: dict[str, None] = {}
        for record in records:
            if record.district_name:
                seen.setdefault(record.district_name, None)
        return list(seen)

    def _fetch_with_retry(self, state_name: str, fin_year: str, district_name: str | None) -> list[dict[str, Any]]:
        attempts = max(1, self.config.max_retries + 1)
        last_exc: Exception | None = None
        for attempt in range(attempts):
            try:
                return self._fetch_once(state_name, fin_year, district_name)
            except UpstreamUnavailableError:
                raise
            except Exception as exc:  # noqa: BLE001
                last_exc = exc
                if attempt + 1 >= attempts or not self._is_retryable(exc):
                    break
                time.sleep(min(2.0, 0.35 * (2**attempt)))
        logger.warning(
            "upstream_fetch_failed state=%s fin_year=%s error=%s",
            normalize_name(state_name),
            fin_year,
            last_exc,
        )
        raise UpstreamUnavailableError(
            "failed to fetch data from the external source",
            details={"reason": str(last_exc)},
        ) from last_exc

    @staticmethod
    def _is_retryable(exc: Exception) -> bool:
        if isinstance(exc, HTTPError):
            return exc.code >= 500 or exc.code == 429
        if isinstance(exc, (TimeoutError, URLError)):
            return True
        msg = str(exc).lower()
        return "timed out" in msg or "temporary failure" in msg

    def _fetch_once(self, state_name: str, fin_year: str, district_name: str | None) -> list[dict[str, Any]]:
        self._wait_for_rate_limit()
        params = {
            "api-key": self.config.api_key or "",
            "format": "json",
            "limit": str(self.config.page_size),
            "filters[state_name]": normalize_name(state_name),
            "filters[fin_year]": fin_year.strip(),
        }
        if district_name:
            params["filters[district_name]"] = normalize_name(district_name)

        url = _append_params(self.config.endpoint_url, params)
        request = Request(url, headers={"accept": "application/json"})
        with urlopen(request, timeout=self.config.timeout_sec) as resp:
            charset = resp.headers.get_content_charset() or "utf-8"
            raw_text = resp.read().decode(charset, "replace")
        return self._parse_records(raw_text)

    def _wait_for_rate_limit(self) -> None:
        min_interval = 1.0 / max(self.config.requests_per_sec, 0.1)
        with self._lock:
            now = time.monotonic()
            wait_for = max(0.0, self._next_allowed_at - now)
            self._next_allowed_at = max(now, self._next_allowed_at) + min_interval
        if wait_for > 0:
            time.sleep(wait_for)

    @staticmethod
    def _parse_records(raw_text: str) -> list[dict[str, Any]]:
        try:
            payload = json.loads(raw_text)
        except json.JSONDecodeError as exc:
            raise UpstreamUnavailableError("external source returned a non-JSON response") from exc

        if isinstance(payload, list):
            return [x for x in payload if isinstance(x, dict)]
        if not isinstance(payload, dict):
            return []
        if str(payload.get("status") or "").lower() == "error":
            raise UpstreamUnavailableError(
                "external source reported an error",
                details={"message": payload.get("message")},
            )
        records = payload.get("records")
        if not isinstance(records, list):
            return []
        return [x for x in records if isinstance(x, dict)]
