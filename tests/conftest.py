from collections import Counter

import pytest

from cache_store import MemoryCache
from fetcher import UpstreamError


class FakeClock:
    """Manually advanced clock (seconds)."""

    def __init__(self, start: float = 1_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeDataSource:
    """Stands in for SupabaseDataSource; counts calls per method."""

    def __init__(self):
        self.calls = Counter()
        self.fail = False
        self.legislations = [{"id": "x", "title": "GDPR"}]
        self.cases = [{"id": "c1", "title": "Schrems II"}, {"id": "c2", "title": "Google Spain"}]

    def _hit(self, name):
        self.calls[name] += 1
        if self.fail:
            raise UpstreamError("Database query failed: 503", 503)

    def list_legislations(self, limit=50, offset=0):
        self._hit("list_legislations")
        return self.legislations[offset:offset + limit]

    def get_legislation(self, legislation_id):
        self._hit("get_legislation")
        return next((l for l in self.legislations if l["id"] == legislation_id), None)

    def get_article(self, article_id):
        self._hit("get_article")
        return {"id": article_id, "title": "Art. 17"} if article_id == "a1" else None

    def list_cases(self, limit=25, offset=0, latest=False, topics=None, date_from=None, date_to=None):
        self._hit("list_cases")
        return self.cases[offset:offset + limit], len(self.cases)

    def get_case(self, case_id):
        self._hit("get_case")
        return next((c for c in self.cases if c["id"] == case_id), None)

    def search(self, q, limit=10):
        self._hit("search")
        return {"legislations": [], "cases": [c for c in self.cases if q.lower() in c["title"].lower()],
                "articles": []}

    def report_articles(self, article_ids):
        self._hit("report_articles")
        return [{"id": a} for a in article_ids]


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(clock):
    return MemoryCache(clock=clock)


@pytest.fixture
def data_source():
    return FakeDataSource()
