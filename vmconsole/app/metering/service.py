"""Daily metering job that snapshots every active VM's allocation."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Callable, List, Optional, Protocol, Sequence, Set

from .inventory import VMInventory
from .models import ResourceSnapshot, SnapshotCollectionResult, SnapshotWriteOutcome

logger = logging.getLogger(__name__)


class SnapshotRepository(Protocol):
    """Persistence operations required by the metering collector."""

    def upsert_snapshot(self, snapshot: ResourceSnapshot) -> SnapshotWriteOutcome:
        ...

    def list_snapshots_for_vm(self, vm_id: int, start: date, end: date) -> Sequence[ResourceSnapshot]:
        ...

    def list_snapshots_for_company(self, company_id: int, start: date, end: date) -> Sequence[ResourceSnapshot]:
        ...


def _current_time(clock: Optional[Callable[[], datetime]]) -> datetime:
    return clock() if clock else datetime.now(timezone.utc)


@dataclass
class MeteringCollector:
    """Writes one snapshot per active VM per day.

    Re-running for a day overwrites that day's reading: the last reading of the
    day is authoritative, identical readings are skipped without a write.
    """

    repository: SnapshotRepository
    inventory: VMInventory
    max_error_messages: int = 50
    clock: Optional[Callable[[], datetime]] = None

    def collect_daily_snapshots(self, as_of_day: Optional[date] = None) -> SnapshotCollectionResult:
        now = _current_time(self.clock)
        day = as_of_day or now.date()

        vms = self.inventory.list_active_vms()
        created = updated = skipped = 0
        errors: List[int] = []
        messages: List[str] = []
        seen: Set[int] = set()

        for vm in vms:
            if vm.is_terminal or vm.id in seen:
                continue
            seen.add(vm.id)
            try:
                allocation = self.inventory.get_allocation(vm.id)
                snapshot = ResourceSnapshot(
                    vm_id=vm.id,
                    company_id=vm.company_id,
                    snapshot_date=day,
                    cpu_cores=allocation.cpu_cores,
                    memory_mb=allocation.memory_mb,
                    storage_gb=allocation.storage_gb,
                    recorded_at=now,
                )
                outcome = self.repository.upsert_snapshot(snapshot)
            except Exception as exc:
                logger.exception(
                    "Failed to record resource snapshot",
                    extra={"vm_id": vm.id, "company_id": vm.company_id, "snapshot_date": day.isoformat()},
                )
                errors.append(vm.id)
                if len(messages) < self.max_error_messages:
                    messages.append(f"VM {vm.id}: {exc}")
                continue

            if outcome == SnapshotWriteOutcome.CREATED:
                created += 1
            elif outcome == SnapshotWriteOutcome.UPDATED:
                updated += 1
            else:
                skipped += 1

        result = SnapshotCollectionResult(
            as_of_day=day,
            created=created,
            updated=updated,
            skipped=skipped,
            errors=errors,
            error_messages=messages,
        )
        logger.info(
            "Resource snapshot collection finished",
            extra={
                "snapshot_date": day.isoformat(),
                "created": created,
                "updated": updated,
                "skipped": skipped,
                "failed": len(errors),
            },
        )
        return result

    def list_snapshots_for_vm(self, vm_id: int, start: date, end: date) -> Sequence[ResourceSnapshot]:
        return self.repository.list_snapshots_for_vm(vm_id, start, end)

    def list_snapshots_for_company(self, company_id: int, start: date, end: date) -> Sequence[ResourceSnapshot]:
        return self.repository.list_snapshots_for_company(company_id, start, end)


__all__ = ["MeteringCollector", "SnapshotRepository"]
