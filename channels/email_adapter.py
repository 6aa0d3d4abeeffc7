"""
Email Template Sender — renders configured templates and posts them to a mail API.

Templates live in configuration under channels.email.credentials.templates,
keyed by template id:

    templates:
      welcome:
        subject: "Thanks for reaching out, {{name}}"
        body_html: "<p>Hi {{name}} from {{company}}</p>"
        body_text: ""

Placeholders are {{attribute}} names resolved against the contact; unknown
placeholders render as empty strings.
"""
from __future__ import annotations

import re
import structlog
from typing import Any

from channels.base import ChannelError, HttpCollaborator, MessageSender
from models.schemas import ContactAttributes, EmailConfig

logger = structlog.get_logger()

_PLACEHOLDER = re.compile(r"\{\{\s*(\w+)\s*\}\}")
_TAG = re.compile(r"<[^>]*>")


def render_template(text: str, contact: ContactAttributes) -> str:
    def replace(match):
        value = contact.attribute(match.group(1))
        return "" if value is None else str(value)
    return _PLACEHOLDER.sub(replace, text or "")


def html_to_text(html: str) -> str:
    return _TAG.sub("", html or "")


class EmailTemplateSender(HttpCollaborator, MessageSender):

    channel = "email"
    SEND_PATH = "/v1/send"

    def __init__(
        self,
        base_url: str = "",
        api_key: str = "",
        from_email: str = "",
        from_name: str = "Auto Engagement",
        templates: dict[str, dict[str, str]] = None,
        **kwargs,
    ):
        super().__init__(base_url=base_url, api_key=api_key, **kwargs)
        self.from_email = from_email
        self.from_name = from_name
        self.templates = templates or {}

    @classmethod
    def from_credentials(cls, credentials: dict[str, Any], **kwargs) -> EmailTemplateSender:
        return cls(
            base_url=credentials.get("api_url", ""),
            api_key=credentials.get("api_key", ""),
            from_email=credentials.get("from_email", ""),
            from_name=credentials.get("from_name", "Auto Engagement"),
            templates=credentials.get("templates", {}),
            **kwargs,
        )

    @property
    def is_available(self) -> bool:
        return bool(self.base_url and self.from_email)

    def render(self, config: EmailConfig, contact: ContactAttributes) -> dict[str, str]:
        template = self.templates.get(config.email_template_id)
        if template is None:
            raise ChannelError(f"Email template not found: {config.email_template_id}", self.channel)

        subject = config.subject_override or template.get("subject") or "Automated Email"
        body_html = render_template(template.get("body_html", ""), contact)
        body_text = render_template(template.get("body_text", ""), contact) or html_to_text(body_html)
        return {
            "subject": render_template(subject, contact),
            "body_html": body_html,
            "body_text": body_text,
        }

    async def send(self, template_ref: EmailConfig, contact: ContactAttributes) -> dict[str, Any]:
        if not contact.email:
            raise ChannelError("Contact has no email address", self.channel)

        rendered = self.render(template_ref, contact)
        payload = {
            "from": {"email": self.from_email, "name": template_ref.from_name or self.from_name},
            "to": {"email": contact.email, "name": contact.name or None},
            **rendered,
        }
        logger.info("email_template_send",
                    template_id=template_ref.email_template_id,
                    contact_id=contact.contact_id)

        result = await self._request("POST", self.SEND_PATH, json=payload)
        return {
            "email_sent": True,
            "status": "sent",
            "message_id": result.get("message_id", result.get("id", "")),
            "to_email": contact.email,
            "subject": rendered["subject"],
        }
