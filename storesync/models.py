"""
ORM models for the tables owned by the sync engine.

``sync_rules``, ``sync_logs``, ``product_mappings``, ``order_mappings`` and
``webhooks``. Stores, products and orders themselves belong to collaborators
(see ``storesync.repositories``) and are referenced here by id only.

All timestamps are naive UTC.
"""

from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Base(DeclarativeBase):
    pass


RULE_TYPES = ("product", "inventory", "order")

PENDING = "pending"
IN_PROGRESS = "in_progress"
COMPLETED = "completed"
FAILED = "failed"
TERMINAL_STATES = (COMPLETED, FAILED)


class SyncRule(Base):
    __tablename__ = "sync_rules"
    __table_args__ = (
        CheckConstraint("source_store_id <> target_store_id", name="ck_sync_rules_distinct_stores"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(255))
    source_store_id: Mapped[str] = mapped_column(String(64), index=True)
    target_store_id: Mapped[str] = mapped_column(String(64), index=True)
    type: Mapped[str] = mapped_column(String(16))  # product | inventory | order
    conditions: Mapped[dict] = mapped_column(JSON, default=dict)
    transformations: Mapped[dict] = mapped_column(JSON, default=dict)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    schedule: Mapped[str | None] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "source_store_id": self.source_store_id,
            "target_store_id": self.target_store_id,
            "type": self.type,
            "conditions": self.conditions or {},
            "transformations": self.transformations or {},
            "is_active": self.is_active,
            "schedule": self.schedule,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }


class SyncLog(Base):
    __tablename__ = "sync_logs"
    __table_args__ = (
        Index("ix_sync_logs_status_next_retry", "status", "next_retry_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    # nullable for ad-hoc manual runs; a deleted rule leaves its history behind
    sync_rule_id: Mapped[int | None] = mapped_column(
        ForeignKey("sync_rules.id", ondelete="SET NULL"), nullable=True, index=True
    )
    source_store_id: Mapped[str] = mapped_column(String(64), index=True)
    target_store_id: Mapped[str] = mapped_column(String(64), index=True)
    type: Mapped[str] = mapped_column(String(16))
    status: Mapped[str] = mapped_column(String(16), default=PENDING, index=True)
    action: Mapped[str] = mapped_column(String(16), default="sync")  # sync | webhook | manual
    entity_type: Mapped[str | None] = mapped_column(String(16), nullable=True)
    entity_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    external_source_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    external_target_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    details: Mapped[dict] = mapped_column(JSON, default=dict)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    retry_count: Mapped[int] = mapped_column(Integer, default=0)
    next_retry_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    retry_of_id: Mapped[int | None] = mapped_column(ForeignKey("sync_logs.id", ondelete="SET NULL"), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, index=True)
    started_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    finished_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATES

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "sync_rule_id": self.sync_rule_id,
            "source_store_id": self.source_store_id,
            "target_store_id": self.target_store_id,
            "type": self.type,
            "status": self.status,
            "action": self.action,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "external_source_id": self.external_source_id,
            "external_target_id": self.external_target_id,
            "details": self.details or {},
            "error": self.error,
            "retry_count": self.retry_count,
            "next_retry_at": self.next_retry_at.isoformat() if self.next_retry_at else None,
            "retry_of_id": self.retry_of_id,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
        }


class _MappingColumns:
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    source_store_id: Mapped[str] = mapped_column(String(64))
    target_store_id: Mapped[str] = mapped_column(String(64))
    source_entity_id: Mapped[str] = mapped_column(String(128))
    target_entity_id: Mapped[str] = mapped_column(String(128))
    sync_rule_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)


class ProductMapping(_MappingColumns, Base):
    __tablename__ = "product_mappings"
    __table_args__ = (
        UniqueConstraint("source_store_id", "source_entity_id", "target_store_id",
                         name="uq_product_mappings_source_target"),
    )

    # source variant id -> target variant id, filled lazily by inventory runs
    variant_map: Mapped[dict] = mapped_column(JSON, default=dict)


class OrderMapping(_MappingColumns, Base):
    __tablename__ = "order_mappings"
    __table_args__ = (
        UniqueConstraint("source_store_id", "source_entity_id", "target_store_id",
                         name="uq_order_mappings_source_target"),
    )


class Webhook(Base):
    __tablename__ = "webhooks"
    __table_args__ = (UniqueConstraint("store_id", "topic", name="uq_webhooks_store_topic"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    store_id: Mapped[str] = mapped_column(String(64), index=True)
    external_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    topic: Mapped[str] = mapped_column(String(128))
    address: Mapped[str] = mapped_column(String(1024))
    format: Mapped[str] = mapped_column(String(16), default="json")
    secret: Mapped[str | None] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "store_id": self.store_id,
            "external_id": self.external_id,
            "topic": self.topic,
            "address": self.address,
            "format": self.format,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
