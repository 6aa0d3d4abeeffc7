"""
Builds the collaborator set from settings.

A channel that is disabled or missing in configuration yields no collaborator,
which the Action Executor reports as not_implemented for messaging steps.
"""
from __future__ import annotations

import structlog
from dataclasses import dataclass
from typing import Optional

from channels.base import CallPlacer, MessageSender
from channels.call_placement import RESTCallPlacer
from channels.email_adapter import EmailTemplateSender
from channels.whatsapp_adapter import WhatsAppTemplateSender
from config.settings import Settings

logger = structlog.get_logger()


@dataclass
class Collaborators:
    call_placer: Optional[CallPlacer] = None
    whatsapp: Optional[MessageSender] = None
    email: Optional[MessageSender] = None

    def health(self) -> dict[str, bool]:
        return {
            "ai_call": bool(self.call_placer and self.call_placer.is_available),
            "whatsapp": bool(self.whatsapp and self.whatsapp.is_available),
            "email": bool(self.email and self.email.is_available),
        }

    async def close(self) -> None:
        for c in (self.call_placer, self.whatsapp, self.email):
            close = getattr(c, "close", None)
            if close is not None:
                await close()


def build_collaborators(settings: Settings) -> Collaborators:
    collaborators = Collaborators()

    creds = settings.channel_credentials("ai_call")
    if creds:
        collaborators.call_placer = RESTCallPlacer.from_credentials(creds)

    creds = settings.channel_credentials("whatsapp")
    if creds:
        collaborators.whatsapp = WhatsAppTemplateSender.from_credentials(creds)

    creds = settings.channel_credentials("email")
    if creds:
        collaborators.email = EmailTemplateSender.from_credentials(creds)

    logger.info("collaborators_built", **collaborators.health())
    return collaborators
