from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timezone
import json
import logging
from typing import Any, Iterable
from urllib import error, parse, request

from lapi_mirror.core.models import LapiStatus
from lapi_mirror.upstream.exceptions import UpstreamAuthError, UpstreamError, UpstreamHTTPError

logger = logging.getLogger(__name__)

LOGIN_PATH = "/v1/watchers/login"
MANUAL_SCENARIO = "manual/web-ui"


@dataclass
class UpstreamResponse:
    status: int
    data: Any


class UpstreamClient:
    """
    Async facade over the upstream security-decision API.

    Requests run on a worker thread with urllib. Any 401 on a non-login call
    triggers one re-login and one replay of the same request.
    """

    def __init__(
        self,
        base_url: str,
        username: str | None,
        password: str | None,
        *,
        timeout_seconds: float = 30.0,
        origins: Iterable[str] = ("cscli", "crowdsec", "cscli-import", "manual", "appsec"),
        scopes: Iterable[str] = ("Ip", "Range"),
        page_limit: int = 10000,
        user_agent: str = "lapi-mirror/0.3.0",
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.username = username
        self.password = password
        self.timeout_seconds = timeout_seconds
        self.origins = list(origins)
        self.scopes = list(scopes)
        self.page_limit = page_limit
        self.user_agent = user_agent
        self._token: str | None = None
        self._status = LapiStatus()

    def has_credentials(self) -> bool:
        return bool(self.username and self.password)

    def has_token(self) -> bool:
        return bool(self._token)

    def get_lapi_status(self) -> LapiStatus:
        return self._status.model_copy()

    def update_lapi_status(self, is_connected: bool, error_message: str | None = None) -> None:
        self._status = LapiStatus(
            is_connected=is_connected,
            last_check=datetime.now(timezone.utc),
            last_error=error_message,
        )

    def _send(self, method: str, path: str, body: object = None) -> UpstreamResponse:
        headers = {
            "User-Agent": self.user_agent,
            "Connection": "close",
            "Content-Type": "application/json",
        }
        if self._token and LOGIN_PATH not in path:
            headers["Authorization"] = f"Bearer {self._token}"
        raw = json.dumps(body, ensure_ascii=False).encode("utf-8") if body is not None else None
        req = request.Request(url=f"{self.base_url}{path}", data=raw, method=method, headers=headers)
        try:
            with request.urlopen(req, timeout=self.timeout_seconds) as resp:  # noqa: S310
                return UpstreamResponse(status=getattr(resp, "status", 200), data=self._decode(resp.read()))
        except error.HTTPError as exc:
            return UpstreamResponse(status=exc.code, data=self._decode(exc.read()))
        except (error.URLError, TimeoutError, OSError) as exc:
            reason = getattr(exc, "reason", exc)
            raise UpstreamError(f"{method} {path} failed: {reason}") from exc

    @staticmethod
    def _decode(payload: bytes) -> Any:
        if not payload:
            return None
        text = payload.decode("utf-8", errors="replace")
        try:
            return json.loads(text)
        except json.JSONDecodeError:
            return text

    async def _request(self, method: str, path: str, body: object = None, *, is_retry: bool = False) -> Any:
        resp = await asyncio.to_thread(self._send, method, path, body)
        if resp.status == 401 and LOGIN_PATH not in path:
            if is_retry:
                raise UpstreamAuthError("Unauthorized after re-authentication", resp.data)
            logger.info("Upstream returned 401 for %s %s; re-authenticating", method, path)
            if not await self.login():
                raise UpstreamAuthError(body=resp.data)
            return await self._request(method, path, body, is_retry=True)
        if resp.status >= 400:
            raise UpstreamHTTPError(resp.status, f"{method} {path}", resp.data)
        return resp.data

    async def login(self) -> bool:
        if not self.has_credentials():
            self.update_lapi_status(False, "Credentials are not configured")
            return False
        logger.info("Logging in to upstream at %s as %s", self.base_url, self.username)
        try:
            data = await self._request(
                "POST",
                LOGIN_PATH,
                {"machine_id": self.username, "password": self.password, "scenarios": [MANUAL_SCENARIO]},
            )
        except UpstreamError as exc:
            logger.warning("Upstream login failed: %s", exc)
            self.update_lapi_status(False, str(exc))
            return False
        token = data.get("token") if isinstance(data, dict) else None
        if not token:
            logger.warning("Upstream login response did not contain a token")
            self.update_lapi_status(False, "Login response invalid")
            return False
        self._token = str(token)
        self.update_lapi_status(True)
        return True

    async def fetch_alerts(
        self,
        since: str | None = None,
        until: str | None = None,
        active_only: bool = False,
    ) -> list[dict[str, Any]]:
        """
        Fetch alerts across every configured origin and scope, merged by id.

        ``since`` and ``until`` are relative durations ("2h30m0s"); ``None`` leaves
        that side unbounded. Raises UpstreamError only when every query fails.
        """
        base: dict[str, str] = {"limit": str(self.page_limit)}
        if since:
            base["since"] = since
        if until:
            base["until"] = until
        if active_only:
            base["has_active_decision"] = "true"
        queries = [{"origin": o} for o in self.origins] + [{"scope": s} for s in self.scopes]

        merged: dict[object, dict[str, Any]] = {}
        failures: list[str] = []
        # sequential on purpose: the upstream is easily overwhelmed
        for extra in queries:
            path = "/v1/alerts?" + parse.urlencode({**base, **extra})
            try:
                data = await self._request("GET", path)
            except UpstreamError as exc:
                logger.warning("Failed to fetch alerts for %s: %s", extra, exc)
                failures.append(str(exc))
                continue
            if isinstance(data, list):
                for alert in data:
                    if isinstance(alert, dict):
                        merged[alert.get("id", id(alert))] = alert
        if queries and len(failures) == len(queries):
            self.update_lapi_status(False, failures[-1])
            raise UpstreamError(f"All alert queries failed: {failures[-1]}")
        self.update_lapi_status(True)
        return list(merged.values())

    async def get_alert(self, alert_id: int | str) -> Any:
        return await self._request("GET", f"/v1/alerts/{parse.quote(str(alert_id))}")

    async def add_decision(
        self,
        value: str,
        decision_type: str,
        duration: str,
        reason: str = "Manual decision from Web UI",
    ) -> Any:
        """Decisions are created by posting an alert that carries a single decision."""
        now = datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")
        payload = [
            {
                "scenario": MANUAL_SCENARIO,
                "campaign_name": MANUAL_SCENARIO,
                "message": f"Manual decision from Web UI: {reason}",
                "events_count": 1,
                "start_at": now,
                "stop_at": now,
                "capacity": 0,
                "leakspeed": "0",
                "simulated": False,
                "events": [],
                "scenario_hash": "",
                "scenario_version": "",
                "source": {"scope": "ip", "value": value},
                "decisions": [
                    {
                        "type": decision_type,
                        "duration": duration,
                        "value": value,
                        "origin": "cscli",
                        "scenario": MANUAL_SCENARIO,
                        "scope": "ip",
                    }
                ],
            }
        ]
        return await self._request("POST", "/v1/alerts", payload)

    async def delete_decision(self, decision_id: str) -> Any:
        return await self._request("DELETE", f"/v1/decisions/{parse.quote(str(decision_id))}")

    async def delete_alert(self, alert_id: int | str) -> Any:
        return await self._request("DELETE", f"/v1/alerts/{parse.quote(str(alert_id))}")
