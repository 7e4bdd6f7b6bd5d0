"""SQLAlchemy Core table definitions for the local durable outbox."""

from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    Float,
    Index,
    Integer,
    MetaData,
    Table,
    Text,
    UniqueConstraint,
)

# Naming convention for constraints
convention = {
    "ix": "ix_%(column_0_label)s",
    "uq": "uq_%(table_name)s_%(column_0_name)s",
    "ck": "ck_%(table_name)s_%(constraint_name)s",
    "fk": "fk_%(table_name)s_%(column_0_name)s_%(referred_table_name)s",
    "pk": "pk_%(table_name)s",
}
metadata = MetaData(naming_convention=convention)


# =====================================================
# 1. PENDING PROGRESS EVENTS
# =====================================================
# One row per (module_id, lesson_id); newer events coalesce into it.
# seq gives enqueue order and is kept across coalescing.
progress_outbox = Table(
    "progress_outbox",
    metadata,
    Column("seq", Integer, primary_key=True, autoincrement=True),
    Column("client_event_id", Text, nullable=False, unique=True),
    Column("module_id", Text, nullable=False),
    Column("lesson_id", Text, nullable=False),
    Column("progress", Float, nullable=False),
    Column("time_spent_delta", Integer, nullable=False, server_default="0"),
    Column("score", Float),
    Column("position_seconds", Float),
    Column("metadata", JSON),
    Column("client_updated_at", DateTime(timezone=True), nullable=False),
    Column("enqueued_at", DateTime(timezone=True), nullable=False),
    Column("attempts", Integer, nullable=False, server_default="0"),
    Column("last_error", Text),
    Column("coalesced_ids", JSON),
    UniqueConstraint("module_id", "lesson_id", name="uq_progress_outbox_lesson"),
)


# =====================================================
# 2. CONFIRMATIONS
# =====================================================
progress_confirmations = Table(
    "progress_confirmations",
    metadata,
    Column("client_event_id", Text, primary_key=True),
    Column("module_id", Text),
    Column("lesson_id", Text),
    Column("confirmed_at", DateTime(timezone=True), nullable=False),
    Column("server_result", JSON),
    Index("idx_progress_confirmations_confirmed_at", "confirmed_at"),
)
