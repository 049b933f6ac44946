"""SQLAlchemy 2.0 ORM models for the reelforge control plane."""

import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import JSON, Boolean, ForeignKey, Index, String, Text, UniqueConstraint
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def _new_id() -> str:
    return uuid.uuid4().hex


def utcnow() -> datetime:
    """Naive UTC timestamp; SQLite stores datetimes without an offset."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Base(DeclarativeBase):
    """Base class for all ORM models."""
    pass


class Project(Base):
    """A short video being produced in one or more languages.

    ``languages[0]`` is the primary language. ``current_daemon_id`` is the
    ownership lock: once set, only that daemon may claim jobs or write status
    until the project reaches Done, Error or Cancelled.
    """
    __tablename__ = "projects"

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=_new_id)
    user_id: Mapped[str] = mapped_column(String(64), index=True)
    status: Mapped[str] = mapped_column(String(40), default="New", index=True)
    languages: Mapped[list] = mapped_column(JSON, default=list)
    prompt: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    raw_script: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    settings: Mapped[dict] = mapped_column(JSON, default=dict)
    current_daemon_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True, index=True)
    current_daemon_locked_at: Mapped[Optional[datetime]] = mapped_column(nullable=True)
    final_script_text: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    final_voiceover_id: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    final_voiceover_path: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    final_voiceover_url: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    final_video_path: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    final_video_url: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    deleted_at: Mapped[Optional[datetime]] = mapped_column(nullable=True)
    created_at: Mapped[datetime] = mapped_column(default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(default=utcnow, onupdate=utcnow)

    @property
    def primary_language(self) -> str:
        return (self.languages or ["en"])[0]


class Job(Base):
    """A unit of work for one project stage; retained after completion."""
    __tablename__ = "jobs"
    __table_args__ = (
        Index("ix_jobs_status_created", "status", "created_at"),
        Index("ix_jobs_project_status", "project_id", "status"),
    )

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=_new_id)
    project_id: Mapped[str] = mapped_column(ForeignKey("projects.id"))
    user_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    type: Mapped[str] = mapped_column(String(32))
    status: Mapped[str] = mapped_column(String(16), default="queued")
    payload: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    daemon_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    created_at: Mapped[datetime] = mapped_column(default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(default=utcnow, onupdate=utcnow)


class ProjectLanguageProgress(Base):
    """Per-language stage flags and failure marker."""
    __tablename__ = "project_language_progress"
    __table_args__ = (UniqueConstraint("project_id", "language_code", name="uq_progress_project_language"),)

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=_new_id)
    project_id: Mapped[str] = mapped_column(ForeignKey("projects.id"), index=True)
    language_code: Mapped[str] = mapped_column(String(16))
    transcription_done: Mapped[bool] = mapped_column(Boolean, default=False)
    captions_done: Mapped[bool] = mapped_column(Boolean, default=False)
    video_parts_done: Mapped[bool] = mapped_column(Boolean, default=False)
    final_video_done: Mapped[bool] = mapped_column(Boolean, default=False)
    disabled: Mapped[bool] = mapped_column(Boolean, default=False)
    failed_step: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    failure_reason: Mapped[Optional[str]] = mapped_column(String(512), nullable=True)
    created_at: Mapped[datetime] = mapped_column(default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(default=utcnow, onupdate=utcnow)


class ProjectStatusHistory(Base):
    """Append-only log of status transitions."""
    __tablename__ = "project_status_history"

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=_new_id)
    project_id: Mapped[str] = mapped_column(ForeignKey("projects.id"), index=True)
    status: Mapped[str] = mapped_column(String(40))
    message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    extra: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(default=utcnow)


class Script(Base):
    __tablename__ = "scripts"
    __table_args__ = (UniqueConstraint("project_id", "language_code", name="uq_script_project_language"),)

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=_new_id)
    project_id: Mapped[str] = mapped_column(ForeignKey("projects.id"), index=True)
    language_code: Mapped[str] = mapped_column(String(16))
    text: Mapped[str] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(default=utcnow, onupdate=utcnow)


class AudioCandidate(Base):
    """A synthesized voiceover; ``is_final`` marks the approved take per language."""
    __tablename__ = "audio_candidates"

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=_new_id)
    project_id: Mapped[str] = mapped_column(ForeignKey("projects.id"), index=True)
    language_code: Mapped[Optional[str]] = mapped_column(String(16), nullable=True)
    path: Mapped[str] = mapped_column(String(500))
    public_url: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    local_path: Mapped[Optional[str]] = mapped_column(String(1000), nullable=True)
    is_final: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(default=utcnow)


class ImageAsset(Base):
    __tablename__ = "image_assets"

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=_new_id)
    project_id: Mapped[str] = mapped_column(ForeignKey("projects.id"), index=True)
    path: Mapped[str] = mapped_column(String(500))
    public_url: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    local_path: Mapped[Optional[str]] = mapped_column(String(1000), nullable=True)
    created_at: Mapped[datetime] = mapped_column(default=utcnow)


class VideoAsset(Base):
    __tablename__ = "video_assets"

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=_new_id)
    project_id: Mapped[str] = mapped_column(ForeignKey("projects.id"), index=True)
    language_code: Mapped[Optional[str]] = mapped_column(String(16), nullable=True)
    path: Mapped[str] = mapped_column(String(500))
    public_url: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    local_path: Mapped[Optional[str]] = mapped_column(String(1000), nullable=True)
    is_final: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(default=utcnow)
