# app/services/gateway.py
"""
Outbound WhatsApp gateway used by campaign dispatch and lifecycle reminders.

Wraps the PyWa client and flattens every outcome into a SendResult so callers
treat "API said no" and "network blew up" the same way.
"""
from __future__ import annotations
import logging
import re
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from app.core.cache import ExpiringValue

log = logging.getLogger("storecast.gateway")

MAX_TEXT_LENGTH = 4096
MAX_INTERACTIVE_BODY = 1024
MAX_CAPTION_LENGTH = 1024
MAX_BUTTONS = 3
MAX_BUTTON_TITLE = 20


@dataclass
class SendResult:
    """Outcome of one outbound send"""
    success: bool
    message_id: Optional[str] = None
    error: Optional[str] = None


def normalize_phone(phone: str) -> str:
    """
    Digits only, with the India country code added to bare 10-digit numbers.
    The Cloud API expects the number without '+'.
    """
    cleaned = re.sub(r"\D", "", str(phone or ""))
    if len(cleaned) == 10:
        cleaned = f"91{cleaned}"
    return cleaned


def _extract_message_id(response: Any) -> Optional[str]:
    if hasattr(response, 'id'):
        return str(response.id)
    if isinstance(response, str):
        return response
    return str(response) if response else None


class WhatsAppGateway:
    """Send primitives over the WhatsApp Cloud API"""

    def __init__(
        self,
        client_factory: Callable[[], Any],
        client_ttl_seconds: float = 3600,
        template_language: str = "en"
    ):
        """
        Args:
            client_factory: Builds a PyWa WhatsApp client (or None when not configured)
            client_ttl_seconds: How long a built client is reused before rebuilding it
            template_language: Language code used for template sends
        """
        self._client = ExpiringValue(client_factory, client_ttl_seconds)
        self.template_language = template_language

    # ────────────────────────────────────────────
    # Send primitives
    # ────────────────────────────────────────────

    def send_text(self, phone: str, text: str) -> SendResult:
        return self._send(
            phone, "text",
            lambda wa, to: wa.send_text(to=to, text=(text or "")[:MAX_TEXT_LENGTH])
        )

    def send_buttons(self, phone: str, text: str, buttons: List[Dict[str, str]]) -> SendResult:
        """Interactive reply buttons; WhatsApp allows at most three"""
        from pywa.types import Button as PywaButton

        pywa_buttons = [
            PywaButton(title=btn["title"][:MAX_BUTTON_TITLE], callback_data=btn["id"])
            for btn in buttons[:MAX_BUTTONS]
        ]
        return self._send(
            phone, "buttons",
            lambda wa, to: wa.send_text(
                to=to,
                text=(text or "")[:MAX_INTERACTIVE_BODY],
                buttons=pywa_buttons
            )
        )

    def send_template(self, phone: str, template_name: str, params: Optional[List[Any]] = None) -> SendResult:
        """Approved template with positional body parameters ({{1}}, {{2}}, ...)"""
        from pywa.types.templates import BodyText, TemplateLanguage as PyWaLanguage

        language_map = {
            "en": PyWaLanguage.ENGLISH,
            "en_US": PyWaLanguage.ENGLISH_US,
            "en_GB": PyWaLanguage.ENGLISH_UK,
            "hi": PyWaLanguage.HINDI,
        }
        pywa_language = language_map.get(self.template_language, PyWaLanguage.ENGLISH)

        pywa_params = None
        if params:
            kwargs = {f"param{idx}": str(value) for idx, value in enumerate(params, start=1)}
            pywa_params = [BodyText.params(**kwargs)]

        return self._send(
            phone, "template",
            lambda wa, to: wa.send_template(
                to=to,
                name=template_name,
                language=pywa_language,
                params=pywa_params
            )
        )

    def send_image(self, phone: str, image_url: str, caption: Optional[str] = None) -> SendResult:
        return self._send(
            phone, "image",
            lambda wa, to: wa.send_image(
                to=to,
                image=image_url,
                caption=caption[:MAX_CAPTION_LENGTH] if caption else None
            )
        )

    # ────────────────────────────────────────────
    # Internals
    # ────────────────────────────────────────────

    def _send(self, phone: str, kind: str, call: Callable[[Any, str], Any]) -> SendResult:
        to = normalize_phone(phone)
        if not to:
            return SendResult(success=False, error="Invalid phone number")

        try:
            wa = self._client.get()
        except Exception as e:
            log.error(f"❌ Could not build WhatsApp client: {e}")
            return SendResult(success=False, error=f"WhatsApp client error: {e}")

        if wa is None:
            log.warning("WhatsApp client not available - message not sent")
            return SendResult(success=False, error="WhatsApp client not configured")

        try:
            response = call(wa, to)
        except Exception as e:
            log.warning(f"❌ {kind} send to {to} failed: {e}")
            return SendResult(success=False, error=str(e) or type(e).__name__)

        message_id = _extract_message_id(response)
        log.debug(f"✅ {kind} sent to {to}: {message_id}")
        return SendResult(success=True, message_id=message_id)
