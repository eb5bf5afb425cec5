"""Alerting helpers for webhook notifications (stop-loss trips, aborted cycles)."""

from __future__ import annotations

import hashlib
import json
import logging
import os
import socket
import time
import urllib.error
import urllib.request
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Optional

logger = logging.getLogger(__name__)


class AlertSeverity(Enum):
    INFO = 10
    WARNING = 20
    CRITICAL = 30

    def __str__(self) -> str:
        return self.name.lower()

    @classmethod
    def from_string(cls, value: str, default: Optional["AlertSeverity"] = None) -> "AlertSeverity":
        if not value:
            return default or cls.WARNING
        normalized = value.strip().lower()
        for member in cls:
            if member.name.lower() == normalized:
                return member
        return default or cls.WARNING


@dataclass
class AlertConfig:
    enabled: bool
    webhook_url: Optional[str]
    min_severity: AlertSeverity = AlertSeverity.WARNING
    dry_run: bool = False
    timeout: float = 5.0
    dedupe_seconds: float = 300.0


class AlertService:
    """
    Send notifications for events an operator must see.

    Identical alerts (same severity, title and message) are suppressed for
    ``dedupe_seconds`` after the first one. With ``dry_run`` the alert is only
    logged.
    """

    def __init__(self, config: AlertConfig, clock: Callable[[], float] = time.monotonic) -> None:
        self._config = config
        self._clock = clock
        self._enabled = bool(config.enabled and (config.webhook_url or config.dry_run))
        if config.enabled and not self._enabled:
            logger.warning("Alerting enabled but no webhook URL set; disabling alerts")

        self._sent_at: Dict[str, float] = {}

    @classmethod
    def from_config(cls, raw_config: Optional[Dict[str, Any]]) -> "AlertService":
        raw_config = raw_config or {}

        webhook_url = raw_config.get("webhook_url")
        if webhook_url and "${" in webhook_url:
            webhook_url = os.path.expandvars(webhook_url)
        if not webhook_url:
            webhook_url = os.getenv(raw_config.get("webhook_env", "ALERT_WEBHOOK_URL"), "")

        config = AlertConfig(
            enabled=bool(raw_config.get("enabled", False)),
            webhook_url=webhook_url or None,
            min_severity=AlertSeverity.from_string(raw_config.get("min_severity", "warning")),
            dry_run=bool(raw_config.get("dry_run", False)),
            timeout=float(raw_config.get("timeout_seconds", 5.0)),
            dedupe_seconds=float(raw_config.get("dedupe_seconds", 300.0)),
        )
        return cls(config)

    def is_enabled(self) -> bool:
        return self._enabled

    def notify(
        self,
        severity: AlertSeverity,
        title: str,
        message: str,
        context: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """Send one alert. Returns True if it was sent (or logged in dry-run)."""
        if not self._enabled:
            return False
        if severity.value < self._config.min_severity.value:
            return False

        fingerprint = self._fingerprint(severity, title, message)
        now = self._clock()
        sent_at = self._sent_at.get(fingerprint)
        if sent_at is not None and now - sent_at <= self._config.dedupe_seconds:
            logger.debug(f"Alert deduped: {title} (fingerprint={fingerprint[:8]}...)")
            return False

        self._sent_at[fingerprint] = now
        self._prune(now)
        return self._send(severity, title, message, context)

    @staticmethod
    def _fingerprint(severity: AlertSeverity, title: str, message: str) -> str:
        content = f"{severity.name}|{title}|{message}"
        return hashlib.sha256(content.encode('utf-8')).hexdigest()

    def _prune(self, now: float) -> None:
        horizon = max(self._config.dedupe_seconds, 60.0)
        stale = [fp for fp, at in self._sent_at.items() if now - at > horizon]
        for fp in stale:
            del self._sent_at[fp]

    def _send(
        self,
        severity: AlertSeverity,
        title: str,
        message: str,
        context: Optional[Dict[str, Any]],
    ) -> bool:
        payload = self._build_payload(severity, title, message, context)

        if self._config.dry_run:
            logger.info("[ALERT:%s] %s - %s | %s", severity.name, title, message, context or {})
            return True

        request = urllib.request.Request(
            self._config.webhook_url,
            data=json.dumps(payload).encode("utf-8"),
            headers={"Content-Type": "application/json"},
        )
        try:
            with urllib.request.urlopen(request, timeout=self._config.timeout) as response:
                if response.status >= 400:
                    logger.error("Alert webhook returned HTTP %s for '%s'", response.status, title)
                    return False
        except (urllib.error.URLError, socket.timeout) as exc:
            logger.error("Failed to deliver alert '%s': %s", title, exc)
            return False
        return True

    @staticmethod
    def _build_payload(
        severity: AlertSeverity,
        title: str,
        message: str,
        context: Optional[Dict[str, Any]],
    ) -> Dict[str, Any]:
        line_items = [f"[{severity.name}] {title}", message]
        if context:
            line_items.append(f"context={json.dumps(context, sort_keys=True, default=str)}")
        return {"text": " | ".join(filter(None, line_items))}


__all__ = ["AlertService", "AlertSeverity", "AlertConfig"]
