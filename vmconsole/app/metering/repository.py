"""Persistence layer for the daily resource snapshot ledger."""
from __future__ import annotations

from datetime import date
from decimal import Decimal
from typing import Sequence

from ...db import PostgresRepository
from .models import ResourceSnapshot, SnapshotWriteOutcome


def _row_to_snapshot(row: dict) -> ResourceSnapshot:
    return ResourceSnapshot(
        id=row["id"],
        vm_id=row["vm_id"],
        company_id=row["company_id"],
        snapshot_date=row["snapshot_date"],
        cpu_cores=int(row["cpu_cores"]),
        memory_mb=int(row["memory_mb"]),
        storage_gb=Decimal(str(row["storage_gb"])),
        recorded_at=row["recorded_at"],
    )


class PostgresSnapshotRepository(PostgresRepository):
    """Concrete repository persisting resource snapshots in PostgreSQL."""

    def upsert_snapshot(self, snapshot: ResourceSnapshot) -> SnapshotWriteOutcome:
        """Write the day's reading for a VM; identical readings are left untouched."""

        with self._cursor() as cursor:
            cursor.execute(
                """
                INSERT INTO vm_resource_snapshots (
                    vm_id,
                    company_id,
                    snapshot_date,
                    cpu_cores,
                    memory_mb,
                    storage_gb,
                    recorded_at
                )
                VALUES (%(vm_id)s, %(company_id)s, %(snapshot_date)s, %(cpu_cores)s,
                        %(memory_mb)s, %(storage_gb)s, %(recorded_at)s)
                ON CONFLICT (vm_id, snapshot_date) DO UPDATE SET
                    company_id = EXCLUDED.company_id,
                    cpu_cores = EXCLUDED.cpu_cores,
                    memory_mb = EXCLUDED.memory_mb,
                    storage_gb = EXCLUDED.storage_gb,
                    recorded_at = EXCLUDED.recorded_at
                WHERE (
                    vm_resource_snapshots.company_id,
                    vm_resource_snapshots.cpu_cores,
                    vm_resource_snapshots.memory_mb,
                    vm_resource_snapshots.storage_gb
                ) IS DISTINCT FROM (
                    EXCLUDED.company_id,
                    EXCLUDED.cpu_cores,
                    EXCLUDED.memory_mb,
                    EXCLUDED.storage_gb
                )
                RETURNING (xmax = 0) AS inserted
                """,
                {
                    "vm_id": snapshot.vm_id,
                    "company_id": snapshot.company_id,
                    "snapshot_date": snapshot.snapshot_date,
                    "cpu_cores": snapshot.cpu_cores,
                    "memory_mb": snapshot.memory_mb,
                    "storage_gb": snapshot.storage_gb,
                    "recorded_at": snapshot.recorded_at,
                },
            )
            row = cursor.fetchone()
            if row is None:
                return SnapshotWriteOutcome.UNCHANGED
            return SnapshotWriteOutcome.CREATED if row["inserted"] else SnapshotWriteOutcome.UPDATED

    def list_snapshots_for_vm(self, vm_id: int, start: date, end: date) -> Sequence[ResourceSnapshot]:
        """Snapshots for ``vm_id`` with ``start <= snapshot_date < end``."""

        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT *
                FROM vm_resource_snapshots
                WHERE vm_id = %s AND snapshot_date >= %s AND snapshot_date < %s
                ORDER BY snapshot_date
                """,
                (vm_id, start, end),
            )
            return [_row_to_snapshot(row) for row in cursor.fetchall()]

    def list_snapshots_for_company(self, company_id: int, start: date, end: date) -> Sequence[ResourceSnapshot]:
        """Snapshots for ``company_id`` with ``start <= snapshot_date < end``."""

        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT *
                FROM vm_resource_snapshots
                WHERE company_id = %s AND snapshot_date >= %s AND snapshot_date < %s
                ORDER BY vm_id, snapshot_date
                """,
                (company_id, start, end),
            )
            return [_row_to_snapshot(row) for row in cursor.fetchall()]


__all__ = ["PostgresSnapshotRepository"]
