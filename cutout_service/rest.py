"""
Thin client for the backend platform's REST layer.

Tables and stored procedures are exposed PostgREST-style under
`/rest/v1`, and the current user is resolved under `/auth/v1/user`.
Reads are retried a bounded number of times on transient gateway errors;
writes are never retried.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from . import config
from .errors import ConfigurationError

logger = logging.getLogger(__name__)


def eq(value: Any) -> str:
    """PostgREST equality filter."""
    return f"eq.{value}"


class RestClient:
    def __init__(
        self,
        base_url: str,
        api_key: str,
        timeout: float = 30,
        max_retries: int = 2,
        session: Optional[requests.Session] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self.session = session or requests.Session()
        if session is None and max_retries > 0:
            retry = Retry(
                total=max_retries,
                backoff_factor=0.3,
                status_forcelist=(502, 503, 504),
                allowed_methods=frozenset({"GET", "HEAD"}),
            )
            adapter = HTTPAdapter(max_retries=retry)
            self.session.mount("http://", adapter)
            self.session.mount("https://", adapter)

    @classmethod
    def from_settings(cls, settings: Optional[config.Settings] = None) -> "RestClient":
        settings = settings or config.get_settings()
        if not settings.backend_configured:
            raise ConfigurationError("Backend configuration is incomplete; check BACKEND_URL / BACKEND_API_KEY.")
        return cls(
            base_url=settings.backend_url,
            api_key=settings.backend_api_key,
            timeout=settings.request_timeout_seconds,
            max_retries=settings.rest_max_retries,
        )

    def _headers(self, token: Optional[str] = None, **extra: str) -> Dict[str, str]:
        headers = {
            "apikey": self.api_key,
            "Authorization": f"Bearer {token or self.api_key}",
        }
        headers.update(extra)
        return headers

    def _url(self, path: str) -> str:
        return f"{self.base_url}/{path.lstrip('/')}"

    def select(self, table: str, params: Dict[str, str]) -> List[Dict[str, Any]]:
        resp = self.session.get(
            self._url(f"rest/v1/{table}"),
            params=params,
            headers=self._headers(),
            timeout=self.timeout,
        )
        resp.raise_for_status()
        return resp.json()

    def count(self, table: str, params: Dict[str, str]) -> int:
        resp = self.session.head(
            self._url(f"rest/v1/{table}"),
            params=dict(params, select="*"),
            headers=self._headers(Prefer="count=exact"),
            timeout=self.timeout,
        )
        resp.raise_for_status()
        # Content-Range looks like "0-9/42" or "*/0".
        content_range = resp.headers.get("Content-Range", "")
        total = content_range.rpartition("/")[2]
        if not total.isdigit():
            raise ValueError(f"Unexpected Content-Range header: {content_range!r}")
        return int(total)

    def insert(self, table: str, row: Dict[str, Any]) -> Dict[str, Any]:
        resp = self.session.post(
            self._url(f"rest/v1/{table}"),
            json=row,
            headers=self._headers(Prefer="return=representation"),
            timeout=self.timeout,
        )
        resp.raise_for_status()
        body = resp.json()
        if isinstance(body, list):
            return body[0] if body else dict(row)
        return body

    def delete(self, table: str, params: Dict[str, str]) -> int:
        """Delete matching rows and return how many were removed."""
        resp = self.session.delete(
            self._url(f"rest/v1/{table}"),
            params=params,
            headers=self._headers(Prefer="return=representation"),
            timeout=self.timeout,
        )
        resp.raise_for_status()
        body = resp.json() if resp.content else []
        return len(body)

    def rpc(self, function: str, payload: Dict[str, Any]) -> Any:
        resp = self.session.post(
            self._url(f"rest/v1/rpc/{function}"),
            json=payload,
            headers=self._headers(),
            timeout=self.timeout,
        )
        resp.raise_for_status()
        return resp.json() if resp.content else None

    def get_user(self, token: str) -> Dict[str, Any]:
        resp = self.session.get(
            self._url("auth/v1/user"),
            headers=self._headers(token=token),
            timeout=self.timeout,
        )
        resp.raise_for_status()
        return resp.json()
