"""Read-only access to the VM inventory owned by the orchestration layer."""
from __future__ import annotations

from decimal import Decimal
from typing import Optional, Protocol, Sequence

from ...db import PostgresRepository
from .models import TERMINAL_VM_STATUSES, ResourceAllocation, VirtualMachine


class VMInventory(Protocol):
    """Inventory collaborator queried by the metering collector."""

    def list_active_vms(self, company_id: Optional[int] = None) -> Sequence[VirtualMachine]:
        ...

    def get_allocation(self, vm_id: int) -> ResourceAllocation:
        ...


class PostgresVMInventory(PostgresRepository):
    """Inventory adapter reading the console's ``virtual_machines`` table."""

    def list_active_vms(self, company_id: Optional[int] = None) -> Sequence[VirtualMachine]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT id, company_id, name, status
                FROM virtual_machines
                WHERE company_id IS NOT NULL
                  AND LOWER(status) <> ALL(%s)
                  AND (%s::integer IS NULL OR company_id = %s)
                ORDER BY id
                """,
                (sorted(TERMINAL_VM_STATUSES), company_id, company_id),
            )
            return [
                VirtualMachine(
                    id=row["id"],
                    company_id=row["company_id"],
                    name=row.get("name") or "",
                    status=row.get("status") or "",
                )
                for row in cursor.fetchall()
            ]

    def get_allocation(self, vm_id: int) -> ResourceAllocation:
        with self._cursor() as cursor:
            cursor.execute(
                "SELECT cpu_cores, memory_mb, storage_gb FROM virtual_machines WHERE id = %s",
                (vm_id,),
            )
            row = cursor.fetchone()
            if row is None:
                raise LookupError(f"VM {vm_id} not found in inventory")
            return ResourceAllocation(
                cpu_cores=int(row["cpu_cores"] or 0),
                memory_mb=int(row["memory_mb"] or 0),
                storage_gb=Decimal(str(row["storage_gb"] or 0)),
            )


__all__ = ["PostgresVMInventory", "VMInventory"]
