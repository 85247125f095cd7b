"""PostgreSQL persistence for entitlement reads and trial counters."""
from __future__ import annotations

from contextlib import contextmanager
from typing import Iterator, Optional

import psycopg2.extras
from psycopg2.extensions import connection as PgConnection
from psycopg2.extensions import cursor as PgCursor

from ..db import managed_connection
from .models import AccessTier, EntitlementRecord, TrialRecord


def row_to_entitlement(row: dict) -> EntitlementRecord:
    return EntitlementRecord(
        user_id=str(row["user_id"]),
        feature_key=row["feature_key"],
        access=AccessTier(row["access"]),
        is_active=bool(row["is_active"]),
        expires_at=row.get("expires_at"),
        updated_at=row["updated_at"],
    )


def _row_to_trial(row: dict) -> TrialRecord:
    return TrialRecord(
        user_id=str(row["user_id"]),
        trial_limit=int(row["trial_limit"]),
        trial_used=int(row["trial_used"]),
        updated_at=row["updated_at"],
    )


class PostgresEntitlementRepository:
    """Reads entitlements and meters trials in PostgreSQL.

    Entitlement rows are only read here; writes belong to the billing
    reconciler. Trial rows are only mutated through :meth:`consume_trial`.
    """

    def __init__(self, *, conn: Optional[PgConnection] = None) -> None:
        self._conn = conn

    @contextmanager
    def _cursor(self) -> Iterator[PgCursor]:
        with managed_connection(self._conn) as (connection, managed):
            cursor = connection.cursor(cursor_factory=psycopg2.extras.RealDictCursor)
            try:
                yield cursor
                if managed:
                    connection.commit()
            except Exception:
                if managed:
                    connection.rollback()
                raise
            finally:
                cursor.close()

    def get_entitlement(self, user_id: str, feature_key: str) -> Optional[EntitlementRecord]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT *
                FROM billing_entitlements
                WHERE user_id = %s AND feature_key = %s
                LIMIT 1
                """,
                (user_id, feature_key),
            )
            row = cursor.fetchone()
            return row_to_entitlement(row) if row else None

    def get_or_create_trial(self, user_id: str, *, trial_limit: int) -> TrialRecord:
        with self._cursor() as cursor:
            # A concurrent creator wins the insert; the loser reads its row.
            cursor.execute(
                """
                INSERT INTO billing_trials (user_id, trial_limit, trial_used)
                VALUES (%s, %s, 0)
                ON CONFLICT (user_id) DO NOTHING
                """,
                (user_id, trial_limit),
            )
            cursor.execute(
                """
                SELECT *
                FROM billing_trials
                WHERE user_id = %s
                LIMIT 1
                """,
                (user_id,),
            )
            row = cursor.fetchone()
            if not row:
                raise RuntimeError("Failed to load trial record")
            return _row_to_trial(row)

    def consume_trial(self, user_id: str) -> Optional[TrialRecord]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                UPDATE billing_trials
                SET trial_used = trial_used + 1,
                    updated_at = NOW()
                WHERE user_id = %s AND trial_used < trial_limit
                RETURNING *
                """,
                (user_id,),
            )
            row = cursor.fetchone()
            if row:
                return _row_to_trial(row)

            # Zero rows matched: tell "limit reached" apart from "no trial row".
            cursor.execute(
                """
                SELECT trial_used, trial_limit
                FROM billing_trials
                WHERE user_id = %s
                LIMIT 1
                """,
                (user_id,),
            )
            if cursor.fetchone() is None:
                raise LookupError(f"No trial record for user {user_id}")
            return None


__all__ = ["PostgresEntitlementRepository", "row_to_entitlement"]
