"""Operator alerts.

Every alert is logged; when configured it is also POSTed to a webhook
(Discord ``{"content"}``, Slack ``{"text"}``, or a generic
``{"severity", "message", "timestamp"}`` body) and e-mailed through Resend.
:meth:`Alerter.send` never raises: an alerting failure must not abort the
pipeline step that triggered it.
"""

from __future__ import annotations

import html
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

import httpx

from app.config import settings
from app.utils.logger import logger


SEVERITIES = ("normal", "critical")


class Alerter:
    def __init__(
        self,
        *,
        webhook_url: Optional[str] = None,
        resend_api_key: Optional[str] = None,
        alert_email: Optional[str] = None,
        http_client: Optional[httpx.Client] = None,
    ) -> None:
        self.webhook_url = webhook_url if webhook_url is not None else settings.ALERT_WEBHOOK_URL
        self.resend_api_key = resend_api_key if resend_api_key is not None else settings.RESEND_API_KEY
        self.alert_email = alert_email if alert_email is not None else settings.ALERT_EMAIL
        self._http = http_client

    def _client(self) -> httpx.Client:
        if self._http is None:
            self._http = httpx.Client(timeout=httpx.Timeout(settings.HTTP_TIMEOUT_SECONDS, connect=5.0))
        return self._http

    def send(self, message: str, severity: str = "normal") -> None:
        if severity not in SEVERITIES:
            severity = "normal"
        formatted = f"[{severity.upper()}] {message}"
        timestamp = datetime.now(timezone.utc).isoformat()

        if severity == "critical":
            logger.error("[alerts] %s", formatted)
        else:
            logger.warning("[alerts] %s", formatted)

        try:
            self._send_webhook(message, severity, formatted, timestamp)
        except Exception as exc:  # noqa: BLE001
            logger.error("[alerts] Failed to send webhook alert: %s", exc)

        try:
            self._send_email(message, severity, timestamp)
        except Exception as exc:  # noqa: BLE001
            logger.error("[alerts] Failed to send alert email: %s", exc)

    def _send_webhook(self, message: str, severity: str, formatted: str, timestamp: str) -> None:
        url = self.webhook_url
        if not url:
            return
        if "discord" in url:
            body: Dict[str, Any] = {"content": formatted}
        elif "slack" in url:
            body = {"text": formatted}
        else:
            body = {"severity": severity, "message": message, "timestamp": timestamp}
        resp = self._client().post(url, json=body)
        if resp.status_code >= 400:
            logger.error("[alerts] webhook returned HTTP %s", resp.status_code)

    def _send_email(self, message: str, severity: str, timestamp: str) -> None:
        if not self.resend_api_key or not self.alert_email:
            return
        subject = f"[{severity.upper()}] Pipeline Alert - {timestamp}"
        body_html = (
            f"<h2>Pipeline Alert ({severity.upper()})</h2>"
            f"<pre style=\"white-space:pre-wrap\">{html.escape(message)}</pre>"
            f"<p>Timestamp: {timestamp}</p>"
        )
        resp = self._client().post(
            settings.RESEND_API_URL,
            json={"from": settings.RESEND_FROM, "to": self.alert_email, "subject": subject, "html": body_html},
            headers={"Authorization": f"Bearer {self.resend_api_key}"},
        )
        if resp.status_code >= 400:
            logger.error("[alerts] Resend API error %s sending alert to %s", resp.status_code, self.alert_email)


class RecordingAlerter(Alerter):
    """Alerter that keeps every message in memory instead of sending it.

    Optionally forwards to ``inner``; handy for tests and dry runs.
    """

    def __init__(self, inner: Optional[Alerter] = None) -> None:
        self.inner = inner
        self.sent: List[Tuple[str, str]] = []

    def send(self, message: str, severity: str = "normal") -> None:
        self.sent.append((severity, message))
        if self.inner is not None:
            self.inner.send(message, severity)
        else:
            logger.info("[alerts] (recorded) [%s] %s", severity.upper(), message)


_default_alerter: Optional[Alerter] = None


def get_alerter() -> Alerter:
    global _default_alerter
    if _default_alerter is None:
        _default_alerter = Alerter()
    return _default_alerter
