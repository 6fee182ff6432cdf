# scanverify/services/api_client.py
# Thin typed wrapper over the scan-data REST API.  One method per call the
# station makes; everything else (auth, aggregation, Excel) lives server-side.

from __future__ import annotations

import logging
import re
from datetime import date as _date
from typing import Any, Dict, List, Optional, Tuple

import requests

log = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 10
_CD_FILENAME_RE = re.compile(r'filename\*?=(?:UTF-8\'\')?"?([^";]+)"?', re.I)


class ApiError(Exception):
    """Non-2xx answer from the API.  `message` is what the user sees."""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.status = status


class ApiUnauthorized(ApiError):
    """401 on an authenticated call: the token is gone or expired."""

    def __init__(self, message: str = "Unauthorized"):
        super().__init__(message, 401)


class ApiUnavailable(ApiError):
    """Server could not be reached at all."""

    def __init__(self, message: str = "Cannot connect to server"):
        super().__init__(message, None)


def _error_message(resp, fallback: str) -> str:
    try:
        body = resp.json()
    except ValueError:
        return fallback
    if isinstance(body, dict):
        return (body.get("error") or body.get("message") or fallback)
    return fallback


class ApiClient:
    def __init__(self, base_url: str, token: Optional[str] = None,
                 session=None, timeout: float = DEFAULT_TIMEOUT):
        self.base_url = (base_url or "").rstrip("/")
        self.token = token
        self.session = session if session is not None else requests.Session()
        self.timeout = timeout

    # ── plumbing ──────────────────────────────────────────────────────────
    def _headers(self, auth: bool = True) -> Dict[str, str]:
        hdrs = {"Content-Type": "application/json", "Accept": "application/json"}
        if auth and self.token:
            hdrs["Authorization"] = f"Bearer {self.token}"
        return hdrs

    def request(self, method: str, endpoint: str, *, json=None, params=None,
                auth: bool = True, fallback: str = "Error"):
        """
        Send one request and return the raw response on 2xx.
        Raises ApiUnauthorized (401 on an authenticated call), ApiError
        (any other non-2xx) or ApiUnavailable (connection/timeout).
        """
        url = f"{self.base_url}{endpoint}"
        if params:
            params = {k: v for k, v in params.items() if v not in (None, "")}
        try:
            resp = self.session.request(
                method, url,
                json=json, params=params or None,
                headers=self._headers(auth=auth),
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            log.warning("API %s %s unreachable: %s", method, endpoint, e)
            raise ApiUnavailable() from e

        log.debug("API %s %s -> %s", method, endpoint, resp.status_code)
        if resp.status_code == 401 and auth:
            raise ApiUnauthorized()
        if not 200 <= resp.status_code < 300:
            raise ApiError(_error_message(resp, fallback), resp.status_code)
        return resp

    def _json(self, method: str, endpoint: str, **kw):
        resp = self.request(method, endpoint, **kw)
        if not resp.content:
            return None
        return resp.json()

    # ── auth ──────────────────────────────────────────────────────────────
    def login(self, username: str, password: str) -> Tuple[str, Dict[str, Any]]:
        # 401 here means bad credentials, not an expired session
        data = self._json("POST", "/auth/login",
                          json={"username": username, "password": password},
                          auth=False, fallback="Login failed")
        return data["token"], data["user"]

    def me(self) -> Dict[str, Any]:
        return self._json("GET", "/auth/me")

    def change_password(self, old_password: str, new_password: str) -> None:
        self.request("POST", "/auth/change-password",
                     json={"old_password": old_password, "new_password": new_password},
                     fallback="Error changing password")

    # ── scans ─────────────────────────────────────────────────────────────
    def submit_scan(self, barcode: str, is_match: bool, notes: str = "") -> Dict[str, Any]:
        return self._json("POST", "/scans",
                          json={"barcode": barcode, "is_match": bool(is_match), "notes": notes or ""},
                          fallback="Error saving scan")

    def list_scans(self, date: Optional[str] = None, is_match: Optional[str] = None,
                   barcode: Optional[str] = None) -> List[Dict[str, Any]]:
        return self._json("GET", "/scans",
                          params={"date": date, "is_match": is_match, "barcode": barcode}) or []

    def scan_stats(self) -> Dict[str, Any]:
        return self._json("GET", "/scans/stats") or {}

    # ── reports ───────────────────────────────────────────────────────────
    def report_summary(self) -> Dict[str, Any]:
        return self._json("GET", "/reports/summary") or {}

    def report_daily(self, days: int = 7) -> List[Dict[str, Any]]:
        return self._json("GET", "/reports/daily", params={"days": days}) or []

    def report_users(self) -> List[Dict[str, Any]]:
        return self._json("GET", "/reports/users") or []

    def export_report(self, start_date: Optional[str] = None,
                      end_date: Optional[str] = None) -> Tuple[str, bytes]:
        """Return (filename, xlsx bytes) for the server-generated report."""
        resp = self.request("GET", "/reports/export",
                            params={"start_date": start_date, "end_date": end_date},
                            fallback="Export failed")
        fname = None
        m = _CD_FILENAME_RE.search(resp.headers.get("Content-Disposition", "") or "")
        if m:
            fname = m.group(1).strip()
        if not fname:
            fname = f"scan_report_{_date.today().isoformat()}.xlsx"
        return fname, resp.content

    # ── users (admin) ─────────────────────────────────────────────────────
    def list_users(self) -> List[Dict[str, Any]]:
        return self._json("GET", "/users") or []

    def get_user(self, user_id: int) -> Dict[str, Any]:
        return self._json("GET", f"/users/{int(user_id)}")

    def create_user(self, data: Dict[str, Any]) -> Dict[str, Any]:
        return self._json("POST", "/users", json=data)

    def update_user(self, user_id: int, data: Dict[str, Any]) -> Dict[str, Any]:
        return self._json("PUT", f"/users/{int(user_id)}", json=data)

    def delete_user(self, user_id: int) -> None:
        self.request("DELETE", f"/users/{int(user_id)}")
