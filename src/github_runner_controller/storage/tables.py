"""ORM tables for the durable controller state.

Pool and instance records are stored as JSON payloads next to the columns
that are useful for ad-hoc queries (``status`` command, operators with a
SQL shell). Credential values never enter the payload; they are kept
Fernet-encrypted in their own column.
"""

from __future__ import annotations

import datetime

from sqlalchemy import JSON, DateTime, Index, Integer, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class ControllerBase(DeclarativeBase):
    """Declarative base for every controller table."""

    type_annotation_map = {
        str: Text,
        int: Integer,
        bool: Integer,  # SQLite compat: 0/1
        datetime.datetime: DateTime(timezone=True),
        dict: JSON,
        list: JSON,
    }


class RunnerPoolTable(ControllerBase):
    __tablename__ = "runner_pools"

    repository: Mapped[str] = mapped_column(Text, primary_key=True)
    dedicated_count: Mapped[int] = mapped_column(Integer, nullable=False)
    dynamic_count: Mapped[int] = mapped_column(Integer, nullable=False)
    dynamic_ceiling: Mapped[int] = mapped_column(Integer, nullable=False)
    payload: Mapped[dict] = mapped_column(JSON, nullable=False)
    updated_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class RunnerInstanceTable(ControllerBase):
    __tablename__ = "runner_instances"
    __table_args__ = (Index("ix_runner_instances_repository", "repository"),)

    id: Mapped[str] = mapped_column(Text, primary_key=True)
    repository: Mapped[str] = mapped_column(Text, nullable=False)
    kind: Mapped[str] = mapped_column(Text, nullable=False)
    state: Mapped[str] = mapped_column(Text, nullable=False)
    runner_name: Mapped[str] = mapped_column(Text, nullable=False, default="")
    quarantined: Mapped[bool] = mapped_column(Integer, nullable=False, default=0)
    generation: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    payload: Mapped[dict] = mapped_column(JSON, nullable=False)
    credential_ciphertext: Mapped[str | None] = mapped_column(Text)
    updated_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class ScalingEventTable(ControllerBase):
    __tablename__ = "scaling_events"
    __table_args__ = (Index("ix_scaling_events_repository_timestamp", "repository", "timestamp"),)

    # Insertion order for stable "most recent" queries within one timestamp
    seq: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    event_id: Mapped[str] = mapped_column(Text, unique=True, nullable=False)
    repository: Mapped[str] = mapped_column(Text, nullable=False)
    action: Mapped[str] = mapped_column(Text, nullable=False)
    reason: Mapped[str] = mapped_column(Text, nullable=False)
    outcome: Mapped[str] = mapped_column(Text, nullable=False)
    instance_id: Mapped[str | None] = mapped_column(Text)
    detail: Mapped[str | None] = mapped_column(Text)
    timestamp: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), nullable=False)
