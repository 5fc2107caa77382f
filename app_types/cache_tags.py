from enum import Enum

class CacheTag(str, Enum):
    LEGISLATION = "legislation"
    LEGISLATIONS = "legislations"
    ARTICLES = "articles"
    ARTICLE = "article"
    CASES = "cases"
    CASE = "case"
    SEARCH = "search"
    REPORTS = "reports"

    def scoped(self, record_id: str) -> str:
        """Tag for a single record, e.g. "legislation:32016R0679"."""
        return f"{self.value}:{record_id}"


class InvalidationKind(str, Enum):
    LEGISLATION = "legislation"
    ARTICLE = "article"
    CASE = "case"
