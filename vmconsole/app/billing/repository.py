"""Persistence layer for invoices and their line items."""
from __future__ import annotations

import logging
from datetime import date, datetime
from decimal import Decimal
from typing import Dict, List, Optional, Sequence, Tuple

import psycopg2.errors
from psycopg2.extensions import cursor as PgCursor

from ...db import PostgresRepository
from .models import (
    Invoice,
    InvoiceLineItem,
    InvoiceStatus,
    LineItemKind,
    format_invoice_number,
    invoice_number_prefix,
)

logger = logging.getLogger(__name__)


def _row_to_line_item(row: dict) -> InvoiceLineItem:
    return InvoiceLineItem(
        id=row["id"],
        invoice_id=row["invoice_id"],
        kind=LineItemKind(row["kind"]),
        description=row["description"],
        quantity=Decimal(str(row["quantity"])),
        unit_price=Decimal(str(row["unit_price"])),
        amount=Decimal(str(row["amount"])),
    )


def _row_to_invoice(row: dict, line_items: Sequence[InvoiceLineItem] = ()) -> Invoice:
    return Invoice(
        id=row["id"],
        invoice_number=row.get("invoice_number"),
        company_id=row["company_id"],
        pricing_plan_id=row.get("pricing_plan_id"),
        billing_period_start=row["billing_period_start"],
        billing_period_end=row["billing_period_end"],
        status=InvoiceStatus(row["status"]),
        currency=row.get("currency") or "USD",
        subtotal=Decimal(str(row["subtotal"])),
        adjustments=Decimal(str(row.get("adjustments") or 0)),
        total=Decimal(str(row["total"])),
        due_date=row.get("due_date"),
        initiated_by=row.get("initiated_by"),
        notes=row.get("notes"),
        issued_at=row.get("issued_at"),
        paid_at=row.get("paid_at"),
        payment_reference=row.get("payment_reference"),
        line_items=list(line_items),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


class PostgresInvoiceRepository(PostgresRepository):
    """Concrete repository persisting invoices in PostgreSQL."""

    def _attach_line_items(self, cursor: PgCursor, rows: Sequence[dict]) -> List[Invoice]:
        if not rows:
            return []
        cursor.execute(
            "SELECT * FROM invoice_line_items WHERE invoice_id = ANY(%s) ORDER BY invoice_id, id",
            ([row["id"] for row in rows],),
        )
        grouped: Dict[int, List[InvoiceLineItem]] = {}
        for item_row in cursor.fetchall():
            grouped.setdefault(item_row["invoice_id"], []).append(_row_to_line_item(item_row))
        return [_row_to_invoice(row, grouped.get(row["id"], ())) for row in rows]

    def _select_active(self, cursor: PgCursor, company_id: int, period_start: date) -> Optional[Invoice]:
        cursor.execute(
            """
            SELECT *
            FROM invoices
            WHERE company_id = %s AND billing_period_start = %s AND status <> 'void'
            LIMIT 1
            """,
            (company_id, period_start),
        )
        row = cursor.fetchone()
        if not row:
            return None
        return self._attach_line_items(cursor, [row])[0]

    def _next_invoice_number(self, cursor: PgCursor, period_start: date) -> str:
        prefix = invoice_number_prefix(period_start)
        cursor.execute("SELECT pg_advisory_xact_lock(hashtext(%s))", (prefix,))
        cursor.execute(
            """
            SELECT invoice_number
            FROM invoices
            WHERE invoice_number LIKE %s
            ORDER BY invoice_number DESC
            LIMIT 1
            """,
            (prefix + "%",),
        )
        row = cursor.fetchone()
        sequence = int(row["invoice_number"].rsplit("-", 1)[1]) + 1 if row else 1
        return format_invoice_number(prefix, sequence)

    def find_active_invoice(self, company_id: int, period_start: date) -> Optional[Invoice]:
        with self._cursor() as cursor:
            return self._select_active(cursor, company_id, period_start)

    def create_invoice(self, invoice: Invoice) -> Tuple[Invoice, bool]:
        """Insert ``invoice`` and its line items in one transaction.

        Returns ``(invoice, created)``. When a non-void invoice already exists
        for the company and period the stored one is returned with ``False``.
        """

        with self._cursor() as cursor:
            cursor.execute(
                "SELECT pg_advisory_xact_lock(%s, %s)",
                (invoice.company_id, invoice.billing_period_start.toordinal()),
            )
            existing = self._select_active(cursor, invoice.company_id, invoice.billing_period_start)
            if existing is not None:
                return existing, False

            invoice_number = invoice.invoice_number or self._next_invoice_number(
                cursor, invoice.billing_period_start
            )
            cursor.execute("SAVEPOINT invoice_create")
            try:
                cursor.execute(
                    """
                    INSERT INTO invoices (
                        invoice_number,
                        company_id,
                        pricing_plan_id,
                        billing_period_start,
                        billing_period_end,
                        status,
                        currency,
                        subtotal,
                        adjustments,
                        total,
                        due_date,
                        initiated_by,
                        notes,
                        created_at,
                        updated_at
                    )
                    VALUES (%(invoice_number)s, %(company_id)s, %(pricing_plan_id)s,
                            %(billing_period_start)s, %(billing_period_end)s, %(status)s,
                            %(currency)s, %(subtotal)s, %(adjustments)s, %(total)s,
                            %(due_date)s, %(initiated_by)s, %(notes)s, %(created_at)s,
                            %(updated_at)s)
                    RETURNING *
                    """,
                    {
                        "invoice_number": invoice_number,
                        "company_id": invoice.company_id,
                        "pricing_plan_id": invoice.pricing_plan_id,
                        "billing_period_start": invoice.billing_period_start,
                        "billing_period_end": invoice.billing_period_end,
                        "status": invoice.status.value,
                        "currency": invoice.currency,
                        "subtotal": invoice.subtotal,
                        "adjustments": invoice.adjustments,
                        "total": invoice.total,
                        "due_date": invoice.due_date,
                        "initiated_by": invoice.initiated_by,
                        "notes": invoice.notes,
                        "created_at": invoice.created_at,
                        "updated_at": invoice.updated_at,
                    },
                )
            except psycopg2.errors.UniqueViolation:
                cursor.execute("ROLLBACK TO SAVEPOINT invoice_create")
                logger.warning(
                    "Invoice insert lost a uniqueness race",
                    extra={"company_id": invoice.company_id},
                )
                existing = self._select_active(cursor, invoice.company_id, invoice.billing_period_start)
                if existing is None:
                    raise
                return existing, False

            invoice_row = cursor.fetchone()
            if not invoice_row:
                raise RuntimeError("Failed to persist invoice")

            items: List[InvoiceLineItem] = []
            for item in invoice.line_items:
                cursor.execute(
                    """
                    INSERT INTO invoice_line_items (
                        invoice_id,
                        kind,
                        description,
                        quantity,
                        unit_price,
                        amount
                    )
                    VALUES (%s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        invoice_row["id"],
                        item.kind.value,
                        item.description,
                        item.quantity,
                        item.unit_price,
                        item.amount,
                    ),
                )
                item_row = cursor.fetchone()
                if not item_row:
                    raise RuntimeError("Failed to persist invoice line item")
                items.append(_row_to_line_item(item_row))
            return _row_to_invoice(invoice_row, items), True

    def get_invoice(self, invoice_id: int) -> Optional[Invoice]:
        with self._cursor() as cursor:
            cursor.execute("SELECT * FROM invoices WHERE id = %s", (invoice_id,))
            row = cursor.fetchone()
            if not row:
                return None
            return self._attach_line_items(cursor, [row])[0]

    def list_invoices(
        self,
        company_id: int,
        *,
        limit: int = 24,
        period_start_from: Optional[date] = None,
        period_start_to: Optional[date] = None,
    ) -> Sequence[Invoice]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT *
                FROM invoices
                WHERE company_id = %(company_id)s
                  AND (%(start_from)s::date IS NULL OR billing_period_start >= %(start_from)s)
                  AND (%(start_to)s::date IS NULL OR billing_period_start < %(start_to)s)
                ORDER BY billing_period_start DESC, id DESC
                LIMIT %(limit)s
                """,
                {
                    "company_id": company_id,
                    "start_from": period_start_from,
                    "start_to": period_start_to,
                    "limit": limit,
                },
            )
            return self._attach_line_items(cursor, cursor.fetchall())

    def list_invoices_for_period(self, period_start: date) -> Sequence[Invoice]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT *
                FROM invoices
                WHERE billing_period_start = %s AND status <> 'void'
                ORDER BY company_id
                """,
                (period_start,),
            )
            return [_row_to_invoice(row) for row in cursor.fetchall()]

    def update_invoice_status(
        self,
        invoice_id: int,
        *,
        expected: InvoiceStatus,
        status: InvoiceStatus,
        issued_at: Optional[datetime] = None,
        paid_at: Optional[datetime] = None,
        payment_reference: Optional[str] = None,
    ) -> Optional[Invoice]:
        """Compare-and-set the status; ``None`` when the row is no longer ``expected``."""

        with self._cursor() as cursor:
            cursor.execute(
                """
                UPDATE invoices
                SET status = %(status)s,
                    issued_at = COALESCE(%(issued_at)s, issued_at),
                    paid_at = COALESCE(%(paid_at)s, paid_at),
                    payment_reference = COALESCE(%(payment_reference)s, payment_reference),
                    updated_at = NOW()
                WHERE id = %(invoice_id)s AND status = %(expected)s
                RETURNING *
                """,
                {
                    "status": status.value,
                    "issued_at": issued_at,
                    "paid_at": paid_at,
                    "payment_reference": payment_reference,
                    "invoice_id": invoice_id,
                    "expected": expected.value,
                },
            )
            row = cursor.fetchone()
            if not row:
                return None
            return self._attach_line_items(cursor, [row])[0]


__all__ = ["PostgresInvoiceRepository"]
