"""Collaborators for the outbound side effects of flow actions."""
from channels.base import (
    CallPlacer,
    ChannelError,
    CircuitBreaker,
    CircuitOpenError,
    HttpCollaborator,
    MessageSender,
)
from channels.call_placement import RESTCallPlacer
from channels.email_adapter import EmailTemplateSender
from channels.whatsapp_adapter import WhatsAppTemplateSender
from channels.registry import Collaborators, build_collaborators

__all__ = [
    "CallPlacer", "MessageSender", "ChannelError", "CircuitOpenError",
    "CircuitBreaker", "HttpCollaborator",
    "RESTCallPlacer", "WhatsAppTemplateSender", "EmailTemplateSender",
    "Collaborators", "build_collaborators",
]
