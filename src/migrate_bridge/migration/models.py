"""
SQLAlchemy models and status vocabularies for migration state.

This module defines the database schema for the identity map (one row per
source record seen by a job), the per-row message log, highwater marks and
stored field mappings.
"""

from datetime import datetime
from enum import Enum
from typing import Any

from sqlalchemy import (
    JSON,
    CheckConstraint,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class MapStatus(str, Enum):
    """Outcome recorded for a source row."""

    IMPORTED = "imported"
    NEEDS_UPDATE = "needs_update"
    IGNORED = "ignored"
    FAILED = "failed"


class RollbackAction(str, Enum):
    """What rollback does to the destination record of a row."""

    DELETE = "delete"
    PRESERVE = "preserve"


class MessageLevel(str, Enum):
    """Severity of a per-row message."""

    ERROR = "error"
    WARNING = "warning"
    INFORMATIONAL = "informational"


class SystemOfRecord(str, Enum):
    """Which side owns the migrated records."""

    SOURCE = "source"
    DESTINATION = "destination"


class RunResult(str, Enum):
    """How an import or rollback run ended."""

    COMPLETED = "completed"
    INCOMPLETE = "incomplete"
    STOPPED = "stopped"
    FAILED = "failed"


class ProcessStatus(str, Enum):
    """What a run controller is doing right now."""

    IDLE = "idle"
    IMPORTING = "importing"
    ROLLING_BACK = "rolling_back"
    STOPPING = "stopping"


# Statuses whose destination key is considered owned by the row
LIVE_STATUSES = (MapStatus.IMPORTED.value, MapStatus.NEEDS_UPDATE.value)


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


class MapRow(Base):
    """
    Identity map entry linking one source key to its destination key.

    Keys are stored as canonical JSON arrays so composite keys of any arity
    share one schema. ``source_id1`` duplicates the first key component as
    text for id-list filtering.
    """

    __tablename__ = "id_map_rows"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    job_id: Mapped[str] = mapped_column(
        String(255), nullable=False, index=True, comment="Owning migration job"
    )
    source_key: Mapped[str] = mapped_column(
        Text, nullable=False, comment="Canonical JSON array of source key values"
    )
    source_id1: Mapped[str] = mapped_column(
        String(512), nullable=False, comment="First source key component as text"
    )
    destination_key: Mapped[str | None] = mapped_column(
        Text, nullable=True, comment="Canonical JSON array of destination key values"
    )

    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default=MapStatus.IMPORTED.value,
        index=True,
        comment="imported, needs_update, ignored, failed",
    )
    rollback_action: Mapped[str] = mapped_column(
        String(20), nullable=False, default=RollbackAction.DELETE.value
    )
    hash: Mapped[str] = mapped_column(
        String(64), nullable=False, default="", comment="Content hash of the source row"
    )
    last_imported: Mapped[datetime | None] = mapped_column(
        DateTime, nullable=True, comment="When the row was last written to the destination"
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, server_default=func.now(), onupdate=func.now()
    )

    __table_args__ = (
        UniqueConstraint("job_id", "source_key", name="uq_id_map_job_source_key"),
        Index("ix_id_map_job_destination_key", "job_id", "destination_key"),
        Index("ix_id_map_job_source_id1", "job_id", "source_id1"),
        CheckConstraint(
            "status IN ('imported', 'needs_update', 'ignored', 'failed')",
            name="ck_id_map_status",
        ),
        CheckConstraint(
            "rollback_action IN ('delete', 'preserve')",
            name="ck_id_map_rollback_action",
        ),
    )

    def __repr__(self) -> str:
        return (
            f"<MapRow(job={self.job_id}, source={self.source_key}, "
            f"destination={self.destination_key}, status={self.status})>"
        )


class MapMessage(Base):
    """
    Message attached to a source key of a job.

    Messages are not tied to a map row by foreign key: queued messages may be
    saved before the row they describe exists.
    """

    __tablename__ = "id_map_messages"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    job_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    source_key: Mapped[str] = mapped_column(Text, nullable=False)
    level: Mapped[str] = mapped_column(
        String(20), nullable=False, default=MessageLevel.ERROR.value
    )
    message: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, server_default=func.now()
    )

    __table_args__ = (
        Index("ix_id_map_messages_job_source_key", "job_id", "source_key"),
        CheckConstraint(
            "level IN ('error', 'warning', 'informational')",
            name="ck_id_map_messages_level",
        ),
    )

    def __repr__(self) -> str:
        return f"<MapMessage(job={self.job_id}, level={self.level}, message={self.message!r})>"


class HighwaterMark(Base):
    """Largest highwater value successfully imported by a job."""

    __tablename__ = "highwater_marks"

    job_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    value: Mapped[Any] = mapped_column(JSON, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, server_default=func.now(), onupdate=func.now()
    )

    def __repr__(self) -> str:
        return f"<HighwaterMark(job={self.job_id}, value={self.value!r})>"


class StoredFieldMapping(Base):
    """
    Field mapping rule persisted outside code.

    Stored rules override coded rules for the same destination field.
    """

    __tablename__ = "stored_field_mappings"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    job_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    destination_field: Mapped[str | None] = mapped_column(String(255), nullable=True)
    source_field: Mapped[str | None] = mapped_column(String(255), nullable=True)
    options: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)

    __table_args__ = (
        UniqueConstraint("job_id", "destination_field", name="uq_stored_mapping_destination"),
    )

    def __repr__(self) -> str:
        return (
            f"<StoredFieldMapping(job={self.job_id}, destination={self.destination_field}, "
            f"source={self.source_field})>"
        )


class JobRun(Base):
    """Summary of one import or rollback run, kept for status reporting."""

    __tablename__ = "job_runs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    job_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    operation: Mapped[str] = mapped_column(String(20), nullable=False)
    result: Mapped[str] = mapped_column(String(20), nullable=False)
    processed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    failed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    started_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    finished_at: Mapped[datetime | None] = mapped_column(
        DateTime, nullable=True, comment="Null while the run is in progress"
    )

    def __repr__(self) -> str:
        return f"<JobRun(job={self.job_id}, operation={self.operation}, result={self.result})>"
