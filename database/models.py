"""
SQLAlchemy ORM models — Cross-database compatible.

Supports: PostgreSQL, MySQL 8+, SQLite.

Key design decisions:
  - JSON type instead of PostgreSQL-specific JSONB; on PG the dialect maps
    JSON to jsonb automatically; on MySQL it uses native JSON; on SQLite
    it serializes to TEXT.
  - String primary keys (uuid hex), no database-specific sequences.
  - executions.active_contact_key is a nullable unique column: set while an
    execution is pending/running, cleared when it ends. The unique index is
    what makes "one active execution per contact" atomic on every backend.
  - executions.flow_id carries no foreign key; history outlives deleted flows.
"""
from __future__ import annotations

from datetime import datetime, time
from typing import Any, Optional

from sqlalchemy import (
    Boolean, DateTime, ForeignKey, Index, Integer, JSON, String, Text, Time,
)
from sqlalchemy.ext.asyncio import AsyncAttrs
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from models.schemas import new_id, utcnow


class Base(AsyncAttrs, DeclarativeBase):
    """Base class for all ORM models."""
    pass


# ──────────────────────────────────────────────────────────────
#  Flows
# ──────────────────────────────────────────────────────────────

class FlowRow(Base):
    __tablename__ = "flows"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=new_id)
    account_id: Mapped[str] = mapped_column(String(64), default="default")
    name: Mapped[str] = mapped_column(String(256), nullable=False)
    description: Mapped[str] = mapped_column(Text, default="")
    priority: Mapped[int] = mapped_column(Integer, default=0)
    is_enabled: Mapped[bool] = mapped_column(Boolean, default=False)

    use_custom_business_hours: Mapped[bool] = mapped_column(Boolean, default=False)
    business_hours_start: Mapped[Optional[time]] = mapped_column(Time, nullable=True)
    business_hours_end: Mapped[Optional[time]] = mapped_column(Time, nullable=True)
    business_hours_timezone: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    conditions: Mapped[list["TriggerConditionRow"]] = relationship(
        back_populates="flow", lazy="selectin", cascade="all, delete-orphan",
        order_by="TriggerConditionRow.position",
    )
    actions: Mapped[list["FlowActionRow"]] = relationship(
        back_populates="flow", lazy="selectin", cascade="all, delete-orphan",
        order_by="FlowActionRow.action_order",
    )

    __table_args__ = (
        Index("ix_flows_account_priority", "account_id", "priority"),
    )


class TriggerConditionRow(Base):
    __tablename__ = "flow_trigger_conditions"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=new_id)
    flow_id: Mapped[str] = mapped_column(String(64), ForeignKey("flows.id", ondelete="CASCADE"), nullable=False)
    position: Mapped[int] = mapped_column(Integer, default=0)
    condition_type: Mapped[str] = mapped_column(String(64), nullable=False)
    condition_operator: Mapped[str] = mapped_column(String(32), default="equals")
    condition_value: Mapped[Optional[str]] = mapped_column(String(512), nullable=True)
    field_name: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)

    flow: Mapped["FlowRow"] = relationship(back_populates="conditions")


class FlowActionRow(Base):
    __tablename__ = "flow_actions"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=new_id)
    flow_id: Mapped[str] = mapped_column(String(64), ForeignKey("flows.id", ondelete="CASCADE"), nullable=False)
    action_order: Mapped[int] = mapped_column(Integer, nullable=False)
    action_type: Mapped[str] = mapped_column(String(32), nullable=False)
    action_config: Mapped[Any] = mapped_column(JSON, default=dict)
    condition_type: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    condition_value: Mapped[Optional[str]] = mapped_column(String(256), nullable=True)

    flow: Mapped["FlowRow"] = relationship(back_populates="actions")


# ──────────────────────────────────────────────────────────────
#  Executions
# ──────────────────────────────────────────────────────────────

class FlowExecutionRow(Base):
    __tablename__ = "flow_executions"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=new_id)
    account_id: Mapped[str] = mapped_column(String(64), default="default")
    flow_id: Mapped[str] = mapped_column(String(64), nullable=False)
    flow_name: Mapped[str] = mapped_column(String(256), default="")
    contact_id: Mapped[str] = mapped_column(String(128), nullable=False)
    contact_name: Mapped[str] = mapped_column(String(256), default="")
    contact_phone: Mapped[str] = mapped_column(String(64), default="")

    status: Mapped[str] = mapped_column(String(32), default="pending")
    current_action_step: Mapped[int] = mapped_column(Integer, default=1)
    triggered_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    is_test_run: Mapped[bool] = mapped_column(Boolean, default=False)

    action_snapshot: Mapped[Any] = mapped_column(JSON, default=list)
    business_hours: Mapped[Optional[Any]] = mapped_column(JSON, nullable=True)
    resume_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    cancel_requested: Mapped[bool] = mapped_column(Boolean, default=False)
    metadata_: Mapped[Any] = mapped_column("metadata", JSON, default=dict)

    active_contact_key: Mapped[Optional[str]] = mapped_column(String(256), nullable=True, unique=True)

    __table_args__ = (
        Index("ix_executions_flow", "flow_id"),
        Index("ix_executions_contact", "account_id", "contact_id"),
        Index("ix_executions_status", "status"),
        Index("ix_executions_triggered", "triggered_at"),
    )


class ActionLogRow(Base):
    __tablename__ = "flow_action_logs"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=new_id)
    execution_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("flow_executions.id", ondelete="CASCADE"), nullable=False,
    )
    action_id: Mapped[str] = mapped_column(String(64), default="")
    action_order: Mapped[int] = mapped_column(Integer, nullable=False)
    action_type: Mapped[str] = mapped_column(String(32), nullable=False)
    status: Mapped[str] = mapped_column(String(32), default="pending")
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    skip_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    result_data: Mapped[Any] = mapped_column(JSON, default=dict)
    resume_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("ix_action_logs_execution", "execution_id", "action_order"),
    )
