"""
Notification service for the downstream "matches ready" webhook.

The webhook is a signal for the meeting-creation flow; delivery failures are
reported in the result and never raised.
"""
from typing import Dict, Any, List
import json
import logging
import os

import requests

logger = logging.getLogger(__name__)

WEBHOOK_TIMEOUT_SECONDS = 30


class NotificationService:
    """Posts match batches to MATCHES_WEBHOOK_URL."""

    def __init__(self):
        self.webhook_url = os.getenv('MATCHES_WEBHOOK_URL')
        self.webhook_api_key = os.getenv('WEBHOOK_API_KEY')

    def is_configured(self) -> bool:
        return bool(self.webhook_url)

    def _get_headers(self) -> dict:
        headers = {"Content-Type": "application/json"}
        if self.webhook_api_key:
            headers["X-API-KEY"] = self.webhook_api_key
        return headers

    def send_matches_ready(self, batch_id: str, match_pairs: List[Dict[str, Any]]) -> Dict[str, Any]:
        """
        Send one batch of committed matches.

        Args:
            batch_id: Cycle or task identifier
            match_pairs: [{"match_id", "user_a_id", "user_b_id", "score"}, ...]

        Returns:
            Dict with success flag and message
        """
        if not self.is_configured():
            logger.warning(f"MATCHES_WEBHOOK_URL not configured, skipping notification for batch {batch_id}")
            return {"success": False, "skipped": True, "message": "Webhook URL not configured"}

        payload = {"batch_id": batch_id, "match_pairs": match_pairs}
        # Payload carries user ids; log counts only
        logger.info(f"Sending matches-ready notification for batch {batch_id} ({len(match_pairs)} pairs)")

        try:
            response = requests.post(
                self.webhook_url,
                json=payload,
                timeout=WEBHOOK_TIMEOUT_SECONDS,
                headers=self._get_headers()
            )
        except requests.exceptions.RequestException as e:
            logger.error(f"Request error sending matches-ready notification: {e}")
            return {"success": False, "message": f"Request error: {str(e)}"}

        if not 200 <= response.status_code < 300:
            logger.error(f"Webhook returned error for batch {batch_id}: status={response.status_code}")
            return {
                "success": False,
                "message": f"Webhook error: {response.status_code}",
                "response": response.text
            }

        response_data = {}
        try:
            if response.content and response.text.strip():
                response_data = response.json()
        except json.JSONDecodeError:
            response_data = {"raw_response": response.text}

        logger.info(f"Matches-ready notification delivered for batch {batch_id}")
        return {
            "success": True,
            "message": "Matches-ready notification sent",
            "match_pairs_count": len(match_pairs),
            "response": response_data
        }
