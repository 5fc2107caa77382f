# fetcher.py
import os
import logging
from typing import Any, Dict, List, Optional, Tuple

import requests
from dotenv import load_dotenv

# -----------------------------------------------------------
# Environment & logging
# -----------------------------------------------------------
load_dotenv()
logger = logging.getLogger("uvicorn.error")

SUPABASE_URL = os.getenv("SUPABASE_URL", "")
SUPABASE_ANON_KEY = os.getenv("SUPABASE_ANON_KEY")
REQUEST_TIMEOUT_SECONDS = float(os.getenv("SUPABASE_TIMEOUT_SECONDS", "20"))


class UpstreamError(Exception):
    """The database REST endpoint failed or could not be reached."""

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


# -----------------------------------------------------------
# Helpers
# -----------------------------------------------------------
def _mask_token(token: Optional[str]) -> str:
    if not token:
        return "None"
    return f"{token[:4]}…{token[-4:]}" if len(token) > 8 else "****"


def _total_from_content_range(value: Optional[str]) -> Optional[int]:
    # PostgREST: "0-24/3573" or "*/0"
    if not value or "/" not in value:
        return None
    total = value.rsplit("/", 1)[1]
    return int(total) if total.isdigit() else None


class SupabaseDataSource:
    """
    Thin client for the hosted database's PostgREST endpoint.
    Every read the API serves goes through here; nothing is cached at this layer.
    """

    def __init__(
        self,
        base_url: str = SUPABASE_URL,
        api_key: Optional[str] = SUPABASE_ANON_KEY,
        session: Optional[requests.Session] = None,
        timeout: float = REQUEST_TIMEOUT_SECONDS,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.session = session or requests.Session()
        self.timeout = timeout
        logger.info(
            "DATA SOURCE → url=%s key=%s", self.base_url or "<unset>", _mask_token(api_key)
        )

    def _headers(self, count: bool = False) -> Dict[str, str]:
        headers = {"Accept": "application/json"}
        if self.api_key:
            headers["apikey"] = self.api_key
            headers["Authorization"] = f"Bearer {self.api_key}"
        if count:
            headers["Prefer"] = "count=exact"
        return headers

    def _query(
        self, table: str, params: Any, count: bool = False
    ) -> Tuple[List[dict], Optional[int]]:
        if not self.base_url:
            raise UpstreamError("SUPABASE_URL not configured")
        url = f"{self.base_url}/rest/v1/{table}"
        try:
            resp = self.session.get(url, headers=self._headers(count), params=params, timeout=self.timeout)
        except requests.RequestException as e:
            logger.error("Network error querying %s: %s", table, str(e))
            raise UpstreamError(f"Network error: {str(e)}") from e

        logger.info("UPSTREAM CALLED → table=%s status=%s bytes≈%s", table, resp.status_code, len(resp.content))
        if not 200 <= resp.status_code < 300:
            logger.warning("Failed upstream response for %s: HTTP %s", table, resp.status_code)
            raise UpstreamError(f"Database query failed: {resp.status_code}", resp.status_code)

        total = _total_from_content_range(resp.headers.get("Content-Range")) if count else None
        return resp.json(), total

    def _one(self, table: str, record_id: str, select: str = "*") -> Optional[dict]:
        rows, _ = self._query(table, {"select": select, "id": f"eq.{record_id}", "limit": 1})
        return rows[0] if rows else None

    # -------------------------------------------------------
    # Public API
    # -------------------------------------------------------
    def list_legislations(self, limit: int = 50, offset: int = 0) -> List[dict]:
        rows, _ = self._query(
            "legislations",
            {"select": "*", "order": "created_at.desc", "limit": limit, "offset": offset},
        )
        return rows

    def get_legislation(self, legislation_id: str) -> Optional[dict]:
        legislation = self._one("legislations", legislation_id)
        if legislation is None:
            return None
        articles, _ = self._query(
            "articles",
            {
                "select": "id,article_number,article_number_text,title",
                "legislation_id": f"eq.{legislation_id}",
                "order": "article_number.asc",
            },
        )
        legislation["articles"] = articles
        return legislation

    def get_article(self, article_id: str) -> Optional[dict]:
        return self._one("articles", article_id, "*,legislations(id,title,celex_number)")

    def list_cases(
        self,
        limit: int = 25,
        offset: int = 0,
        latest: bool = False,
        topics: Optional[str] = None,
        date_from: Optional[str] = None,
        date_to: Optional[str] = None,
    ) -> Tuple[List[dict], int]:
        params: List[Tuple[str, Any]] = [("select", "*")]
        if date_from:
            params.append(("date_of_judgment", f"gte.{date_from}"))
        if date_to:
            params.append(("date_of_judgment", f"lte.{date_to}"))
        if topics:
            params.append(("topics", f"cs.{{{topics}}}"))
        order = "date_of_judgment.desc.nullslast,created_at.desc" if latest else "created_at.desc"
        params += [("order", order), ("limit", limit), ("offset", offset)]
        # requests accepts a list of pairs, which keeps repeated filters.
        rows, total = self._query("case_laws", params, count=True)
        return rows, total if total is not None else len(rows)

    def get_case(self, case_id: str) -> Optional[dict]:
        return self._one("case_laws", case_id)

    def search(self, q: str, limit: int = 10) -> Dict[str, List[dict]]:
        pattern = f"*{q}*"
        legislations, _ = self._query(
            "legislations",
            {
                "select": "id,title,celex_number,summary,document_type",
                "or": f"(title.ilike.{pattern},celex_number.ilike.{pattern})",
                "limit": limit,
            },
        )
        cases, _ = self._query(
            "case_laws",
            {
                "select": "id,title,case_id_text,parties,summary_text,court",
                "or": f"(title.ilike.{pattern},case_id_text.ilike.{pattern},parties.ilike.{pattern})",
                "limit": limit,
            },
        )
        articles, _ = self._query(
            "articles",
            {
                "select": "id,title,article_number_text,legislation_id",
                "or": f"(title.ilike.{pattern},markdown_content.ilike.{pattern})",
                "limit": limit,
            },
        )
        return {"legislations": legislations, "cases": cases, "articles": articles}

    def report_articles(self, article_ids: List[str]) -> List[dict]:
        if not article_ids:
            return []
        rows, _ = self._query(
            "articles",
            {
                "select": "*,legislations(id,title,celex_number)",
                "id": f"in.({','.join(article_ids)})",
                "order": "article_number.asc",
            },
        )
        return rows
