from __future__ import annotations

import json
from urllib.error import HTTPError
from urllib.parse import parse_qs, urlparse

import pytest

from app.services.cache import MISS, ResponseCache
from app.services.data_gov_client import STATES_CACHE_KEY, DataGovClient, DataGovConfig, records_cache_key
from app.services.errors import UpstreamUnavailableError


class _FakeHeaders:
    @staticmethod
    def get_content_charset() -> str:
        return "utf-8"


class _FakeResponse:
    def __init__(self, body: str):
        self._body = body
        self.headers = _FakeHeaders()

    def read(self) -> bytes:
        return self._body.encode("utf-8")

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):  # noqa: ANN001
        return None


def _payload(*districts: str) -> str:
    return json.dumps(
        {
            "status": "ok",
            "records": [
                {
                    "state_name": "Kerala",
                    "district_name": name,
                    "fin_year": "2024-2025",
                    "month": "April",
                    "Average_days_of_employment_provided_per_Household": "45",
                    "Total_Households_Worked": "1,200",
                }
                for name in districts
            ],
        }
    )


def _client(**kwargs) -> DataGovClient:
    defaults = {
        "endpoint_url": "https://api.data.gov.in/resource/test-resource",
        "api_key": "test-key",
        "timeout_sec": 1.0,
        "max_retries": 2,
        "requests_per_sec": 1000.0,
    }
    defaults.update(kwargs)
    return DataGovClient(DataGovConfig(**defaults), ResponseCache())


@pytest.fixture(autouse=True)
def _no_sleep(monkeypatch):
    monkeypatch.setattr("app.services.data_gov_client.time.sleep", lambda _: None)


def test_unconfigured_client_raises_upstream_unavailable():
    client = DataGovClient(DataGovConfig(endpoint_url="", api_key=None), ResponseCache())

    with pytest.raises(UpstreamUnavailableError):
        client.fetch_records("KERALA", "2024-2025")


def test_fetch_records_normalizes_and_sends_filters(monkeypatch):
    seen_urls = []

    def _fake_urlopen(request, timeout):  # noqa: ARG001
        seen_urls.append(request.full_url)
        return _FakeResponse(_payload("Alappuzha", "Idukki"))

    monkeypatch.setattr("app.services.data_gov_client.urlopen", _fake_urlopen)

    records = _client().fetch_records("kerala", "2024-2025", "alappuzha")

    assert [r.district_name for r in records] == ["ALAPPUZHA", "IDUKKI"]
    assert records[0].state_code == "KL"
    assert records[0].month == "APRIL"
    assert records[0].total_households_worked == 1200
    params = parse_qs(urlparse(seen_urls[0]).query)
    assert params["api-key"] == ["test-key"]
    assert params["format"] == ["json"]
    assert params["filters[state_name]"] == ["KERALA"]
    assert params["filters[fin_year]"] == ["2024-2025"]
    assert params["filters[district_name]"] == ["ALAPPUZHA"]


def test_non_empty_result_is_cached(monkeypatch):
    calls = []

    def _fake_urlopen(*args, **kwargs):  # noqa: ARG001
        calls.append(1)
        return _FakeResponse(_payload("Alappuzha"))

    monkeypatch.setattr("app.services.data_gov_client.urlopen", _fake_urlopen)
    client = _client()

    first = client.fetch_records("KERALA", "2024-2025")
    second = client.fetch_records("Kerala", "2024-2025")

    assert len(calls) == 1
    assert first == second
    assert client.cache.get(records_cache_key("KERALA", "2024-2025")) is not MISS


def test_empty_result_is_not_cached(monkeypatch):
    calls = []

    def _fake_urlopen(*args, **kwargs):  # noqa: ARG001
        calls.append(1)
        return _FakeResponse(json.dumps({"records": []}))

    monkeypatch.setattr("app.services.data_gov_client.urlopen", _fake_urlopen)
    client = _client()

    assert client.fetch_records("GOA", "2024-2025") == []
    assert client.fetch_records("GOA", "2024-2025") == []
    assert len(calls) == 2


def test_error_status_payload_raises_without_retry(monkeypatch):
    calls = []

    def _fake_urlopen(*args, **kwargs):  # noqa: ARG001
        calls.append(1)
        return _FakeResponse(json.dumps({"status": "error", "message": "invalid api key"}))

    monkeypatch.setattr("app.services.data_gov_client.urlopen", _fake_urlopen)

    with pytest.raises(UpstreamUnavailableError) as exc_info:
        _client().fetch_records("KERALA", "2024-2025")

    assert exc_info.value.details == {"message": "invalid api key"}
    assert len(calls) == 1


def test_non_json_body_raises_upstream_unavailable(monkeypatch):
    monkeypatch.setattr(
        "app.services.data_gov_client.urlopen",
        lambda *args, **kwargs: _FakeResponse("<html>maintenance</html>"),  # noqa: ARG005
    )

    with pytest.raises(UpstreamUnavailableError):
        _client().fetch_records("KERALA", "2024-2025")


def test_retryable_http_error_is_retried(monkeypatch):
    attempts = {"count": 0}

    def _flaky_urlopen(request, timeout):  # noqa: ARG001
        attempts["count"] += 1
        if attempts["count"] == 1:
            raise HTTPError(request.full_url, 503, "unavailable", hdrs=None, fp=None)
        return _FakeResponse(_payload("Idukki"))

    monkeypatch.setattr("app.services.data_gov_client.urlopen", _flaky_urlopen)

    records = _client().fetch_records("KERALA", "2024-2025")

    assert attempts["count"] == 2
    assert [r.district_name for r in records] == ["IDUKKI"]


def test_client_error_is_not_retried(monkeypatch):
    attempts = {"count": 0}

    def _forbidden(request, timeout):  # noqa: ARG001
        attempts["count"] += 1
        raise HTTPError(request.full_url, 403, "forbidden", hdrs=None, fp=None)

    monkeypatch.setattr("app.services.data_gov_client.urlopen", _forbidden)

    with pytest.raises(UpstreamUnavailableError):
        _client().fetch_records("KERALA", "2024-2025")

    assert attempts["count"] == 1


def test_timeouts_exhaust_retries(monkeypatch):
    attempts = {"count": 0}

    def _timeout(*args, **kwargs):  # noqa: ARG001
        attempts["count"] += 1
        raise TimeoutError("timed out")

    monkeypatch.setattr("app.services.data_gov_client.urlopen", _timeout)

    with pytest.raises(UpstreamUnavailableError) as exc_info:
        _client(max_retries=2).fetch_records("KERALA", "2024-2025")

    assert attempts["count"] == 3
    assert "timed out" in exc_info.value.details["reason"]


def test_states_list_is_cached():
    client = _client()

    states = client.fetch_states_list()

    assert "KERALA" in states
    assert client.cache.get(STATES_CACHE_KEY) == states


def test_sub_regions_list_deduplicates_names(monkeypatch):
    monkeypatch.setattr(
        "app.services.data_gov_client.urlopen",
        lambda *args, **kwargs: _FakeResponse(_payload("Idukki", "Alappuzha", "Idukki")),  # noqa: ARG005
    )

    assert _client().fetch_sub_regions_list("KERALA") == ["IDUKKI", "ALAPPUZHA"]
