"""Pydantic schemas shared by the daemon and the control plane."""

from reelforge.schemas.extras import STATUS_EXTRA_MODELS, validate_status_extra
from reelforge.schemas.status import (
    FAILURE_STEPS,
    TERMINAL_STATUSES,
    AssetKind,
    JobStatus,
    JobType,
    ProjectStatus,
)

__all__ = [
    "AssetKind",
    "FAILURE_STEPS",
    "JobStatus",
    "JobType",
    "ProjectStatus",
    "STATUS_EXTRA_MODELS",
    "TERMINAL_STATUSES",
    "validate_status_extra",
]
