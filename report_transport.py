"""Best-effort submission of finished trip reports."""
from __future__ import annotations

import os
from collections import deque
from datetime import datetime, timezone
from typing import Any, Deque, Dict, Optional

import httpx

from trip_ledger import RouteReport

APP_VERSION = "1.0.0"
REPORT_HTTP_TIMEOUT_S = float(os.getenv("REPORT_HTTP_TIMEOUT_S", "30"))


def build_submission(
    report: RouteReport,
    *,
    device_info: str,
    submitted_at: Optional[datetime] = None,
    app_version: str = APP_VERSION,
) -> Dict[str, Any]:
    """Wrap a report in the submission envelope expected by the reports API."""

    submitted = submitted_at or datetime.now(timezone.utc)
    return {
        "report": report.to_dict(),
        "metadata": {
            "appVersion": app_version,
            "deviceInfo": device_info,
            "submittedAt": submitted.isoformat(),
        },
    }


class ReportTransport:
    """POSTs reports to ``REPORT_API_URL``; never raises for transport failures."""

    def __init__(
        self,
        url: str,
        *,
        token: Optional[str] = None,
        device_info: str = "bus-navigation",
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._url = url
        self._token = token
        self.device_info = device_info
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None
        self.attempts: Deque[Dict[str, Any]] = deque(maxlen=20)

    @classmethod
    def from_env(cls) -> "ReportTransport":
        """Build a transport from ``REPORT_API_URL`` (``REPORT_API_TOKEN`` optional)."""

        url = (os.getenv("REPORT_API_URL") or "").strip()
        if not url:
            raise RuntimeError("Missing required environment variables: REPORT_API_URL")
        token = (os.getenv("REPORT_API_TOKEN") or "").strip() or None
        device_info = (os.getenv("DEVICE_INFO") or "").strip() or "bus-navigation"
        return cls(url=url, token=token, device_info=device_info)

    async def _ensure_client(self) -> httpx.AsyncClient:
        if self._client is None:
            headers = {"Authorization": f"Bearer {self._token}"} if self._token else None
            self._client = httpx.AsyncClient(
                timeout=REPORT_HTTP_TIMEOUT_S, headers=headers, transport=self._transport
            )
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def submit(self, report: RouteReport, submitted_at: Optional[datetime] = None) -> bool:
        payload = build_submission(report, device_info=self.device_info, submitted_at=submitted_at)
        attempt: Dict[str, Any] = {
            "route_id": report.route_id,
            "submitted_at": payload["metadata"]["submittedAt"],
            "ok": False,
        }
        self.attempts.append(attempt)
        client = await self._ensure_client()
        try:
            response = await client.post(self._url, json=payload)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            attempt["error"] = str(exc)
            print(f"[report] submission for {report.route_id} failed: {exc}")
            return False
        attempt["ok"] = True
        print(f"[report] submitted report for {report.route_id}")
        return True
