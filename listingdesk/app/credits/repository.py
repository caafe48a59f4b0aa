"""PostgreSQL persistence for billing events, the ledger, and profiles."""
from __future__ import annotations

import logging
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Iterator, Optional, Sequence

import psycopg2
import psycopg2.extras
from psycopg2.extensions import connection as PgConnection

from .exceptions import TransientError
from .models import (
    BillingEvent,
    LedgerEntry,
    LedgerReason,
    PlanChange,
    PlanStatus,
    PlanTier,
    Profile,
    SavedListing,
)

logger = logging.getLogger(__name__)

SCHEMA_PATH = Path(__file__).with_name("schema.sql")

# Failures that mean the database could not be reached rather than that the
# statement itself was wrong.
_TRANSIENT_ERRORS = (psycopg2.OperationalError, psycopg2.InterfaceError)


def _row_to_ledger_entry(row: dict) -> LedgerEntry:
    return LedgerEntry(
        entry_id=int(row["id"]),
        user_id=row["user_id"],
        delta=int(row["delta"]),
        reason=LedgerReason(row["reason"]),
        external_ref=row.get("external_ref"),
        actor_id=row.get("actor_id"),
        note=row.get("note"),
        created_at=row["created_at"],
    )


def _row_to_listing(row: dict) -> SavedListing:
    return SavedListing(
        listing_id=int(row["id"]),
        user_id=row["user_id"],
        title=row["title"],
        description=row["description"],
        created_at=row["created_at"],
    )


def _row_to_profile(row: dict) -> Profile:
    status = row.get("plan_status")
    return Profile(
        user_id=row["user_id"],
        plan_tier=PlanTier(row["plan_tier"]),
        plan_status=PlanStatus(status) if status else None,
        customer_ref=row.get("customer_ref"),
        plan_event_at=row.get("plan_event_at"),
        updated_at=row["updated_at"],
    )


class PostgresCreditsRepository:
    """Repository bound to one open transaction."""

    def __init__(self, conn: PgConnection) -> None:
        self._conn = conn

    @contextmanager
    def _cursor(self) -> Iterator[psycopg2.extras.RealDictCursor]:
        cursor = self._conn.cursor(cursor_factory=psycopg2.extras.RealDictCursor)
        try:
            yield cursor
        finally:
            cursor.close()

    def execute_script(self, sql: str) -> None:
        with self._cursor() as cursor:
            cursor.execute(sql)

    def claim_event(self, event: BillingEvent) -> bool:
        with self._cursor() as cursor:
            cursor.execute(
                """
                INSERT INTO events (id, kind, payload, occurred_at, received_at)
                VALUES (%s, %s, %s, %s, %s)
                ON CONFLICT (id) DO NOTHING
                """,
                (
                    event.event_id,
                    event.kind.value,
                    psycopg2.extras.Json(event.payload.model_dump(mode="json")),
                    event.occurred_at,
                    event.received_at,
                ),
            )
            return cursor.rowcount > 0

    def insert_ledger_entry(self, entry: LedgerEntry) -> LedgerEntry:
        with self._cursor() as cursor:
            cursor.execute(
                """
                INSERT INTO ledger (user_id, delta, reason, external_ref, actor_id, note, created_at)
                VALUES (%(user_id)s, %(delta)s, %(reason)s, %(external_ref)s,
                        %(actor_id)s, %(note)s, %(created_at)s)
                RETURNING *
                """,
                {
                    "user_id": entry.user_id,
                    "delta": entry.delta,
                    "reason": entry.reason.value,
                    "external_ref": entry.external_ref,
                    "actor_id": entry.actor_id,
                    "note": entry.note,
                    "created_at": entry.created_at,
                },
            )
            row = cursor.fetchone()
            if not row:
                raise RuntimeError("Failed to persist ledger entry")
            return _row_to_ledger_entry(row)

    def sum_ledger(self, user_id: str) -> int:
        with self._cursor() as cursor:
            cursor.execute(
                "SELECT COALESCE(SUM(delta), 0) AS balance FROM ledger WHERE user_id = %s",
                (user_id,),
            )
            row = cursor.fetchone()
            return int(row["balance"]) if row else 0

    def list_ledger_entries(self, user_id: str) -> Sequence[LedgerEntry]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT *
                FROM ledger
                WHERE user_id = %s
                ORDER BY id ASC
                """,
                (user_id,),
            )
            rows = cursor.fetchall() or []
            return [_row_to_ledger_entry(row) for row in rows]

    def has_ledger_ref(self, user_id: str, external_ref: str) -> bool:
        with self._cursor() as cursor:
            cursor.execute(
                "SELECT 1 FROM ledger WHERE user_id = %s AND external_ref = %s LIMIT 1",
                (user_id, external_ref),
            )
            return cursor.fetchone() is not None

    def lock_user(self, user_id: str) -> None:
        with self._cursor() as cursor:
            cursor.execute("SELECT pg_advisory_xact_lock(hashtext(%s))", (user_id,))

    def get_profile(self, user_id: str, *, for_update: bool = False) -> Optional[Profile]:
        query = "SELECT * FROM profiles WHERE user_id = %s"
        if for_update:
            query += " FOR UPDATE"
        with self._cursor() as cursor:
            cursor.execute(query, (user_id,))
            row = cursor.fetchone()
            return _row_to_profile(row) if row else None

    def find_profile_by_customer(self, customer_ref: str) -> Optional[Profile]:
        with self._cursor() as cursor:
            cursor.execute(
                "SELECT * FROM profiles WHERE customer_ref = %s LIMIT 1",
                (customer_ref,),
            )
            row = cursor.fetchone()
            return _row_to_profile(row) if row else None

    def apply_plan_change(self, change: PlanChange) -> Optional[Profile]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                INSERT INTO profiles (user_id, plan_tier, plan_status, customer_ref, plan_event_at)
                VALUES (%(user_id)s, %(plan_tier)s, %(plan_status)s, %(customer_ref)s, %(occurred_at)s)
                ON CONFLICT (user_id) DO UPDATE SET
                    plan_tier = EXCLUDED.plan_tier,
                    plan_status = EXCLUDED.plan_status,
                    customer_ref = COALESCE(EXCLUDED.customer_ref, profiles.customer_ref),
                    plan_event_at = EXCLUDED.plan_event_at,
                    updated_at = NOW()
                WHERE profiles.plan_event_at IS NULL
                   OR profiles.plan_event_at <= EXCLUDED.plan_event_at
                RETURNING *
                """,
                {
                    "user_id": change.user_id,
                    "plan_tier": change.plan_tier.value,
                    "plan_status": change.plan_status.value,
                    "customer_ref": change.customer_ref,
                    "occurred_at": change.occurred_at,
                },
            )
            row = cursor.fetchone()
            return _row_to_profile(row) if row else None

    def link_customer(self, user_id: str, customer_ref: str) -> Profile:
        with self._cursor() as cursor:
            cursor.execute(
                """
                INSERT INTO profiles (user_id, customer_ref)
                VALUES (%s, %s)
                ON CONFLICT (user_id) DO UPDATE SET
                    customer_ref = COALESCE(profiles.customer_ref, EXCLUDED.customer_ref),
                    updated_at = NOW()
                RETURNING *
                """,
                (user_id, customer_ref),
            )
            row = cursor.fetchone()
            if not row:
                raise RuntimeError("Failed to link customer to profile")
            return _row_to_profile(row)

    def override_plan(self, user_id: str, *, tier: PlanTier, status: Optional[PlanStatus]) -> Profile:
        with self._cursor() as cursor:
            cursor.execute(
                """
                INSERT INTO profiles (user_id, plan_tier, plan_status)
                VALUES (%s, %s, %s)
                ON CONFLICT (user_id) DO UPDATE SET
                    plan_tier = EXCLUDED.plan_tier,
                    plan_status = EXCLUDED.plan_status,
                    updated_at = NOW()
                RETURNING *
                """,
                (user_id, tier.value, status.value if status else None),
            )
            row = cursor.fetchone()
            if not row:
                raise RuntimeError("Failed to override plan")
            return _row_to_profile(row)

    def insert_listing(self, listing: SavedListing) -> SavedListing:
        with self._cursor() as cursor:
            cursor.execute(
                """
                INSERT INTO listings (user_id, title, description, created_at)
                VALUES (%s, %s, %s, %s)
                RETURNING *
                """,
                (listing.user_id, listing.title, listing.description, listing.created_at),
            )
            row = cursor.fetchone()
            if not row:
                raise RuntimeError("Failed to persist listing")
            return _row_to_listing(row)

    def list_listings(self, user_id: str, *, limit: int) -> Sequence[SavedListing]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT *
                FROM listings
                WHERE user_id = %s
                ORDER BY created_at DESC, id DESC
                LIMIT %s
                """,
                (user_id, limit),
            )
            rows = cursor.fetchall() or []
            return [_row_to_listing(row) for row in rows]

    def get_listing(self, user_id: str, listing_id: int) -> Optional[SavedListing]:
        with self._cursor() as cursor:
            cursor.execute(
                "SELECT * FROM listings WHERE id = %s AND user_id = %s",
                (listing_id, user_id),
            )
            row = cursor.fetchone()
            return _row_to_listing(row) if row else None


class PostgresCreditsStore:
    """Hands out repositories wrapped in a commit-or-rollback transaction."""

    def __init__(
        self,
        *,
        get_conn: Callable[[], PgConnection],
        release_conn: Optional[Callable[[PgConnection], None]] = None,
    ) -> None:
        self._get_conn = get_conn
        self._release_conn = release_conn or (lambda conn: conn.close())

    @contextmanager
    def transaction(self) -> Iterator[PostgresCreditsRepository]:
        try:
            connection = self._get_conn()
        except _TRANSIENT_ERRORS as exc:
            raise TransientError(f"Could not connect to credits store: {exc}") from exc

        try:
            yield PostgresCreditsRepository(connection)
            connection.commit()
        except _TRANSIENT_ERRORS as exc:
            self._rollback(connection)
            raise TransientError(f"Credits store failure: {exc}") from exc
        except Exception:
            self._rollback(connection)
            raise
        finally:
            self._release_conn(connection)

    def ensure_schema(self) -> None:
        """Create the events, ledger, and profiles tables when missing."""

        ddl = SCHEMA_PATH.read_text(encoding="utf-8")
        with self.transaction() as repository:
            repository.execute_script(ddl)

    @staticmethod
    def _rollback(connection: PgConnection) -> None:
        try:
            connection.rollback()
        except psycopg2.Error:
            logger.warning("Rollback failed on credits store connection", exc_info=True)


__all__ = ["PostgresCreditsRepository", "PostgresCreditsStore", "SCHEMA_PATH"]
