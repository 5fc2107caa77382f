import pytest
import requests

from fetcher import SupabaseDataSource, UpstreamError, _total_from_content_range


class FakeResponse:
    def __init__(self, status_code=200, payload=None, headers=None):
        self.status_code = status_code
        self._payload = [] if payload is None else payload
        self.headers = headers or {}
        self.content = b"[]"

    def json(self):
        return self._payload


class FakeSession:
    def __init__(self, *responses, error=None):
        self.responses = list(responses)
        self.error = error
        self.requests = []

    def get(self, url, headers=None, params=None, timeout=None):
        self.requests.append({"url": url, "headers": headers, "params": params})
        if self.error:
            raise self.error
        return self.responses.pop(0)


def make_source(session):
    return SupabaseDataSource(base_url="https://db.example.co/", api_key="anon-key-123456", session=session)


def test_list_cases_reads_total_from_content_range():
    session = FakeSession(FakeResponse(payload=[{"id": "c1"}], headers={"Content-Range": "0-0/42"}))
    rows, total = make_source(session).list_cases(limit=1, topics="privacy", latest=True)

    assert rows == [{"id": "c1"}]
    assert total == 42
    sent = session.requests[0]
    assert sent["url"] == "https://db.example.co/rest/v1/case_laws"
    assert sent["headers"]["Prefer"] == "count=exact"
    assert sent["headers"]["apikey"] == "anon-key-123456"
    assert ("topics", "cs.{privacy}") in sent["params"]


def test_get_legislation_returns_none_when_missing():
    assert make_source(FakeSession(FakeResponse(payload=[]))).get_legislation("nope") is None


def test_get_legislation_attaches_articles():
    session = FakeSession(
        FakeResponse(payload=[{"id": "x", "title": "GDPR"}]),
        FakeResponse(payload=[{"id": "a1", "article_number": 1}]),
    )
    legislation = make_source(session).get_legislation("x")
    assert legislation["articles"] == [{"id": "a1", "article_number": 1}]


def test_http_error_raises_upstream_error():
    with pytest.raises(UpstreamError) as excinfo:
        make_source(FakeSession(FakeResponse(status_code=503))).list_legislations()
    assert excinfo.value.status_code == 503


def test_network_error_raises_upstream_error():
    session = FakeSession(error=requests.ConnectionError("refused"))
    with pytest.raises(UpstreamError, match="Network error"):
        make_source(session).get_case("c1")


def test_unconfigured_url_raises():
    with pytest.raises(UpstreamError):
        SupabaseDataSource(base_url="", session=FakeSession()).list_legislations()


@pytest.mark.parametrize("value, expected", [("0-24/3573", 3573), ("*/0", 0), ("0-24/*", None), (None, None)])
def test_total_from_content_range(value, expected):
    assert _total_from_content_range(value) == expected
