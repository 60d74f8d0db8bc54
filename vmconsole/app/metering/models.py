"""Domain models for daily resource metering."""
from __future__ import annotations

from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

TERMINAL_VM_STATUSES = frozenset({"deleted", "destroyed"})

MB_PER_GB = Decimal(1024)


class VirtualMachine(BaseModel):
    """Read-only inventory view of a VM owned by a company."""

    id: int
    company_id: int
    name: str = ""
    status: str = "running"

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @field_validator("status")
    @classmethod
    def _normalize_status(cls, value: str) -> str:
        return value.strip().lower()

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_VM_STATUSES


class ResourceAllocation(BaseModel):
    """Resources currently allocated to a VM."""

    cpu_cores: int = Field(ge=0)
    memory_mb: int = Field(ge=0)
    storage_gb: Decimal = Field(ge=0)

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class ResourceSnapshot(BaseModel):
    """One VM's allocation recorded for one day."""

    id: Optional[int] = None
    vm_id: int
    company_id: int
    snapshot_date: date
    cpu_cores: int = Field(ge=0)
    memory_mb: int = Field(ge=0)
    storage_gb: Decimal = Field(ge=0)
    recorded_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @property
    def memory_gb(self) -> Decimal:
        return Decimal(self.memory_mb) / MB_PER_GB


class SnapshotWriteOutcome(str, Enum):
    """Result of upserting a single snapshot."""

    CREATED = "created"
    UPDATED = "updated"
    UNCHANGED = "unchanged"


class SnapshotCollectionResult(BaseModel):
    """Aggregate outcome of one metering run."""

    as_of_day: date
    created: int = 0
    updated: int = 0
    skipped: int = 0
    errors: List[int] = Field(default_factory=list)
    error_messages: List[str] = Field(default_factory=list)

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @property
    def failed(self) -> int:
        return len(self.errors)

    @property
    def processed(self) -> int:
        return self.created + self.updated + self.skipped + self.failed


__all__ = [
    "MB_PER_GB",
    "ResourceAllocation",
    "ResourceSnapshot",
    "SnapshotCollectionResult",
    "SnapshotWriteOutcome",
    "TERMINAL_VM_STATUSES",
    "VirtualMachine",
]
