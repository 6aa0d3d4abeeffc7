"""
Database layer — Multi-backend persistence for flows, executions and action logs.

Backends:
  - SQL (PostgreSQL / MySQL / SQLite via SQLAlchemy async)
  - In-memory (dict-based, for development/testing)

Quick start:
  from database import create_store
  store = create_store(settings.database)
  await store.initialize()
  flows = await store.list_flows(enabled_only=True)
"""
from database.models import (
    Base, FlowRow, TriggerConditionRow, FlowActionRow,
    FlowExecutionRow, ActionLogRow,
)
from database.session import Database
from database.store_base import BaseEngagementStore, active_contact_key
from database.store import SqlEngagementStore
from database.store_memory import InMemoryEngagementStore
from database.store_factory import create_store, reset_store

__all__ = [
    # ORM models
    "Base", "FlowRow", "TriggerConditionRow", "FlowActionRow",
    "FlowExecutionRow", "ActionLogRow",
    # Session management
    "Database",
    # Store interface
    "BaseEngagementStore", "active_contact_key",
    # Store backends
    "SqlEngagementStore", "InMemoryEngagementStore",
    # Factory
    "create_store", "reset_store",
]
