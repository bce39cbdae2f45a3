# ============================================================================
# MedPlan Alerts — Webhook Surface
# ============================================================================
# Posts each alert as JSON to a configured URL (push gateway, home
# automation hook, chat webhook).
# ============================================================================

import asyncio
import json
import logging
import urllib.request
import urllib.error
from typing import Optional, Dict

from .base import AlertSurface, AlertPayload, DeliveryResult
from ..config import get_config

logger = logging.getLogger(__name__)


class WebhookAlertSurface(AlertSurface):
    """Webhook delivery of reminder alerts."""

    surface_name = "webhook"

    def __init__(self, url: Optional[str] = None, timeout: int = 30):
        self._url = url
        self.timeout = timeout

    @property
    def url(self) -> str:
        return self._url or get_config("webhook_url", "")

    def is_configured(self) -> bool:
        return bool(self.url)

    def request_permission(self) -> bool:
        # Nothing to prompt; a configured endpoint is consent.
        return self.is_configured()

    async def display(self, payload: AlertPayload) -> DeliveryResult:
        if not self.is_configured():
            return DeliveryResult(
                success=False,
                surface=self.surface_name,
                tag=payload.tag,
                error="Webhook URL not configured",
            )
        # urlopen blocks; keep it off the loop that runs timers and requests
        return await asyncio.to_thread(self._post_webhook, self.url, payload.to_dict(), payload.tag)

    def _post_webhook(self, url: str, data: Dict, tag: str) -> DeliveryResult:
        """Post to webhook URL."""
        try:
            req = urllib.request.Request(
                url,
                data=json.dumps({"type": "reminder", "data": data}).encode("utf-8"),
                headers={"Content-Type": "application/json"},
                method="POST",
            )

            with urllib.request.urlopen(req, timeout=self.timeout) as resp:
                status = resp.getcode()

            if status in (200, 201, 202, 204):
                logger.info(f"Webhook delivered reminder {tag}")
                return DeliveryResult(success=True, surface=self.surface_name, tag=tag)
            return DeliveryResult(
                success=False,
                surface=self.surface_name,
                tag=tag,
                error=f"Webhook returned status {status}",
            )

        except urllib.error.HTTPError as e:
            error_body = e.read().decode() if e.fp else str(e)
            logger.error(f"Webhook error: {error_body}")
            return DeliveryResult(
                success=False,
                surface=self.surface_name,
                tag=tag,
                error=f"Webhook error: {e.code}",
            )
        except (urllib.error.URLError, OSError) as e:
            logger.error(f"Webhook failed: {e}")
            return DeliveryResult(
                success=False,
                surface=self.surface_name,
                tag=tag,
                error=str(e),
            )
