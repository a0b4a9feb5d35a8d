from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from ..core.errors import ChatboxError
from .model_catalog import UpstreamConfig, upstream_config


LOG = logging.getLogger("chatbox.llm")

_BALANCE_TIMEOUT = (3, 15)

_STATUS_MESSAGES = {
    401: "API key is invalid or expired",
    403: "API key lacks permission for this request",
    429: "Too many requests; try again later",
}


class BalanceError(ChatboxError):
    def __init__(self, message: str, status_code: int = 502):
        super().__init__(message, details={"status_code": status_code})
        self.status_code = status_code


def _build_session() -> requests.Session:
    session = requests.Session()
    retry = Retry(
        total=2,
        backoff_factor=0.5,
        status_forcelist=(500, 502, 503, 504),
        allowed_methods=frozenset(["GET"]),
    )
    adapter = HTTPAdapter(max_retries=retry, pool_connections=4, pool_maxsize=4)
    session.mount("http://", adapter)
    session.mount("https://", adapter)
    return session


def fetch_balance(upstream: Optional[UpstreamConfig] = None, session: Optional[requests.Session] = None) -> Dict[str, Any]:
    """Return the upstream account balance payload as-is."""
    upstream = upstream or upstream_config()
    if not upstream.api_key:
        raise BalanceError("API key not configured", status_code=500)
    session = session or _build_session()
    try:
        resp = session.get(
            upstream.balance_url,
            headers={"Accept": "application/json", "Authorization": f"Bearer {upstream.api_key}"},
            timeout=_BALANCE_TIMEOUT,
        )
    except requests.exceptions.RequestException as exc:
        LOG.warning("balance_request_failed", extra={"err": str(exc)})
        raise BalanceError("Network error; check the connection", status_code=502) from exc
    if not resp.ok:
        LOG.warning("balance_http_error", extra={"status": resp.status_code})
        message = _STATUS_MESSAGES.get(resp.status_code, f"Failed to fetch balance: {resp.status_code}")
        raise BalanceError(message, status_code=resp.status_code)
    return resp.json()
