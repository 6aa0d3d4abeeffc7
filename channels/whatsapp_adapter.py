"""
WhatsApp Template Sender — sends pre-approved templates via the chat-agent server.

Template variables are filled from contact attributes named in the step's
variable_mappings. The server wraps every reply in a {success, data} envelope.
"""
from __future__ import annotations

import re
import structlog
from typing import Any

from channels.base import ChannelError, HttpCollaborator, MessageSender
from models.schemas import ContactAttributes, WhatsAppConfig

logger = structlog.get_logger()


def normalize_phone(phone: str) -> str:
    """Digits only, keeping a leading + for E.164."""
    digits = re.sub(r"[^\d]", "", phone)
    return f"+{digits}" if phone.strip().startswith("+") else digits


def map_variables(mappings: dict[str, str], contact: ContactAttributes) -> dict[str, str]:
    """template variable -> contact attribute value; empty values are dropped."""
    variables = {}
    for var, attr in mappings.items():
        value = contact.attribute(attr)
        if value not in (None, ""):
            variables[var] = str(value)
    return variables


class WhatsAppTemplateSender(HttpCollaborator, MessageSender):

    channel = "whatsapp"
    SEND_PATH = "/api/v1/send"

    @classmethod
    def from_credentials(cls, credentials: dict[str, Any], **kwargs) -> WhatsAppTemplateSender:
        return cls(
            base_url=credentials.get("server_url", ""),
            api_key=credentials.get("api_key", ""),
            timeout=float(credentials.get("timeout", 30.0)),
            **kwargs,
        )

    @property
    def is_available(self) -> bool:
        return bool(self.base_url)

    async def send(self, template_ref: WhatsAppConfig, contact: ContactAttributes) -> dict[str, Any]:
        if not contact.phone_number:
            raise ChannelError("Contact does not have a phone number", self.channel)

        payload = {
            "phone_number_id": template_ref.whatsapp_phone_number_id,
            "template_id": template_ref.template_id,
            "contact": {
                "phone": normalize_phone(contact.phone_number),
                "name": contact.name or None,
                "email": contact.email or None,
                "company": contact.company or None,
            },
            "variables": map_variables(template_ref.variable_mappings, contact),
        }
        logger.info("whatsapp_template_send",
                    template_id=template_ref.template_id,
                    contact_id=contact.contact_id)

        result = await self._request("POST", self.SEND_PATH, json=payload)
        if not result.get("success"):
            raise ChannelError(result.get("message") or "WhatsApp send failed", self.channel)

        return {
            "whatsapp_sent": True,
            "status": "sent",
            "template_id": template_ref.template_id,
            "message_id": (result.get("data") or {}).get("message_id", ""),
            "to_phone": contact.phone_number,
        }
