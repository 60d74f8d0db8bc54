"""Metering package: daily per-VM resource snapshots."""

from .inventory import VMInventory
from .models import (
    TERMINAL_VM_STATUSES,
    ResourceAllocation,
    ResourceSnapshot,
    SnapshotCollectionResult,
    SnapshotWriteOutcome,
    VirtualMachine,
)
from .service import MeteringCollector, SnapshotRepository

__all__ = [
    "MeteringCollector",
    "ResourceAllocation",
    "ResourceSnapshot",
    "SnapshotCollectionResult",
    "SnapshotRepository",
    "SnapshotWriteOutcome",
    "TERMINAL_VM_STATUSES",
    "VMInventory",
    "VirtualMachine",
]
