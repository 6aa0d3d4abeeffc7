"""
AI Call Placement — asks the calling backend to dial a contact with an agent.

The backend answers immediately with the queued call; the final disposition
arrives later by webhook, so the outcome recorded here is "initiated" unless
the backend already knows better.
"""
from __future__ import annotations

import structlog
from typing import Any

from channels.base import CallPlacer, ChannelError, HttpCollaborator
from models.schemas import ContactAttributes

logger = structlog.get_logger()


class RESTCallPlacer(HttpCollaborator, CallPlacer):
    """Calling backend REST client."""

    channel = "ai_call"
    INITIATE_PATH = "/api/calls/initiate"

    @classmethod
    def from_credentials(cls, credentials: dict[str, Any], **kwargs) -> RESTCallPlacer:
        return cls(
            base_url=credentials.get("base_url", ""),
            api_key=credentials.get("api_key", ""),
            timeout=float(credentials.get("timeout", 30.0)),
            **kwargs,
        )

    @property
    def is_available(self) -> bool:
        return bool(self.base_url)

    async def place_call(
        self,
        agent_id: str,
        phone_number_id: str,
        contact: ContactAttributes,
    ) -> dict[str, Any]:
        if not self.is_available:
            raise ChannelError("Call placement backend not configured", self.channel)
        if not contact.phone_number:
            raise ChannelError("Contact does not have a phone number", self.channel)

        payload = {
            "agent_id": agent_id,
            "phone_number_id": phone_number_id,
            "phone_number": contact.phone_number,
            "contact_id": contact.contact_id,
            "contact_name": contact.name,
            "metadata": {"source": "auto_engagement_flow"},
        }
        logger.info("ai_call_initiate", agent_id=agent_id, contact_id=contact.contact_id)
        result = await self._request("POST", self.INITIATE_PATH, json=payload)

        return {
            "call_initiated": True,
            "call_id": result.get("call_id", result.get("callId", "")),
            "provider_execution_id": result.get("execution_id", result.get("executionId", "")),
            "call_outcome": result.get("call_outcome", "initiated"),
            "agent_id": agent_id,
        }
