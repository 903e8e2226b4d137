from __future__ import annotations

from datetime import datetime
from typing import Any

from psycopg2.extras import Json

from paystate.db.client import get_conn
from paystate.domain.enums import PaymentMethod
from paystate.domain.models import PaymentState
from paystate.domain.statuses import PaymentStatus


class PgStatePersistence:
    """PostgreSQL snapshots of payment states using raw psycopg2.

    One row per order, overwritten on every change. When the database is not
    configured every call is a no-op.

        CREATE TABLE payment_state (
            order_id        TEXT PRIMARY KEY,
            method          TEXT NOT NULL,
            status          TEXT NOT NULL,
            transaction_id  TEXT,
            error           TEXT,
            reference       TEXT,
            redirect_url    TEXT,
            attempt         INTEGER NOT NULL DEFAULT 1,
            last_checked_at TIMESTAMPTZ,
            created_at      TIMESTAMPTZ NOT NULL,
            updated_at      TIMESTAMPTZ NOT NULL,
            snapshot        JSONB NOT NULL DEFAULT '{}'::jsonb
        );
    """

    @staticmethod
    def _hydrate(row: tuple[Any, ...]) -> PaymentState:
        (
            order_id,
            method,
            status,
            transaction_id,
            error,
            reference,
            redirect_url,
            attempt,
            last_checked_at,
            created_at,
            updated_at,
        ) = row
        return PaymentState(
            order_id=str(order_id),
            method=PaymentMethod(str(method)),
            status=PaymentStatus(str(status)),
            transaction_id=str(transaction_id) if transaction_id else None,
            error=str(error) if error else None,
            reference=str(reference) if reference else None,
            redirect_url=str(redirect_url) if redirect_url else None,
            attempt=int(attempt or 1),
            last_checked_at=last_checked_at if isinstance(last_checked_at, datetime) else None,
            created_at=created_at,
            updated_at=updated_at,
        )

    def load_all(self) -> list[PaymentState]:
        states: list[PaymentState] = []
        with get_conn() as conn:
            if conn is None:
                return states
            with conn.cursor() as cur:
                cur.execute(
                    """
                    SELECT order_id, method, status, transaction_id, error, reference,
                           redirect_url, attempt, last_checked_at, created_at, updated_at
                      FROM payment_state
                     ORDER BY created_at ASC
                    """,
                )
                for row in cur.fetchall() or []:
                    states.append(self._hydrate(row))
        return states

    def save(self, state: PaymentState) -> None:
        with get_conn() as conn:
            if conn is None:
                return
            with conn.cursor() as cur:
                cur.execute(
                    """
                    INSERT INTO payment_state (
                        order_id, method, status, transaction_id, error, reference,
                        redirect_url, attempt, last_checked_at, created_at, updated_at, snapshot
                    ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    ON CONFLICT (order_id) DO UPDATE
                        SET method = EXCLUDED.method,
                            status = EXCLUDED.status,
                            transaction_id = EXCLUDED.transaction_id,
                            error = EXCLUDED.error,
                            reference = EXCLUDED.reference,
                            redirect_url = EXCLUDED.redirect_url,
                            attempt = EXCLUDED.attempt,
                            last_checked_at = EXCLUDED.last_checked_at,
                            updated_at = EXCLUDED.updated_at,
                            snapshot = EXCLUDED.snapshot
                    """,
                    (
                        state.order_id,
                        state.method.value,
                        state.status.value,
                        state.transaction_id,
                        state.error,
                        state.reference,
                        state.redirect_url,
                        state.attempt,
                        state.last_checked_at,
                        state.created_at,
                        state.updated_at,
                        Json(state.to_dict()),
                    ),
                )

    def count_by_status(self) -> dict[str, int]:
        counts: dict[str, int] = {}
        with get_conn() as conn:
            if conn is None:
                return counts
            with conn.cursor() as cur:
                cur.execute(
                    """
                    SELECT status, COUNT(*)
                      FROM payment_state
                     GROUP BY status
                    """,
                )
                for status_value, count in cur.fetchall() or []:
                    counts[str(status_value)] = int(count)
        return counts
