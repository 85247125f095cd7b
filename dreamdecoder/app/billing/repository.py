"""Persistence layer for billing domain objects."""
from __future__ import annotations

from contextlib import contextmanager
from typing import Iterator, Optional

import psycopg2.extras
from psycopg2.extensions import connection as PgConnection
from psycopg2.extensions import cursor as PgCursor

from ..db import managed_connection
from ..entitlements.catalog import parse_plan_key
from ..entitlements.models import EntitlementRecord
from .models import BillingWebhookEvent, PurchaseRecord, Subscription, SubscriptionStatus


def _row_to_subscription(row: dict) -> Subscription:
    return Subscription(
        user_id=str(row["user_id"]),
        stripe_subscription_id=row["stripe_subscription_id"],
        stripe_customer_id=row.get("stripe_customer_id"),
        status=SubscriptionStatus(row["status"]),
        current_period_end=row.get("current_period_end"),
        cancel_at_period_end=bool(row.get("cancel_at_period_end")),
        plan_key=parse_plan_key(row.get("plan_key")),
        plan_interval=row.get("plan_interval"),
        stripe_price_id=row.get("stripe_price_id"),
        stripe_product_id=row.get("stripe_product_id"),
        amount_cents=row.get("amount_cents"),
        currency=row.get("currency"),
        updated_at=row["updated_at"],
    )


def _upsert_entitlement(cursor: PgCursor, entitlement: EntitlementRecord) -> bool:
    """Write an entitlement row; a lifetime grant is only replaced by another lifetime grant."""

    cursor.execute(
        """
        INSERT INTO billing_entitlements (
            user_id,
            feature_key,
            access,
            is_active,
            expires_at
        )
        VALUES (%(user_id)s, %(feature_key)s, %(access)s, %(is_active)s, %(expires_at)s)
        ON CONFLICT (user_id, feature_key) DO UPDATE SET
            access = EXCLUDED.access,
            is_active = EXCLUDED.is_active,
            expires_at = EXCLUDED.expires_at,
            updated_at = NOW()
        WHERE billing_entitlements.access <> 'lifetime'
           OR EXCLUDED.access = 'lifetime'
        """,
        {
            "user_id": entitlement.user_id,
            "feature_key": entitlement.feature_key,
            "access": entitlement.access.value,
            "is_active": entitlement.is_active,
            "expires_at": entitlement.expires_at,
        },
    )
    return cursor.rowcount > 0


class PostgresBillingRepository:
    """Concrete repository persisting billing models in PostgreSQL.

    Every public write runs inside one transaction, so a failure part way
    through an event leaves the previous state untouched.
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

    def has_processed_event(self, event_id: str) -> bool:
        with self._cursor() as cursor:
            cursor.execute(
                "SELECT 1 FROM billing_webhook_events WHERE event_id = %s LIMIT 1",
                (event_id,),
            )
            return cursor.fetchone() is not None

    def record_webhook_event(self, event: BillingWebhookEvent) -> bool:
        with self._cursor() as cursor:
            cursor.execute(
                """
                INSERT INTO billing_webhook_events (
                    event_id,
                    event_type,
                    livemode,
                    received_at,
                    processed_at
                )
                VALUES (%s, %s, %s, %s, NOW())
                ON CONFLICT (event_id) DO NOTHING
                """,
                (event.event_id, event.event_type, event.livemode, event.received_at),
            )
            return cursor.rowcount > 0

    def record_lifetime_purchase(self, purchase: PurchaseRecord, entitlement: EntitlementRecord) -> bool:
        """Store the receipt and grant the entitlement; a known session id writes nothing."""

        with self._cursor() as cursor:
            cursor.execute(
                """
                INSERT INTO billing_purchases (
                    stripe_checkout_session_id,
                    user_id,
                    plan_key,
                    stripe_payment_intent_id,
                    status
                )
                VALUES (%s, %s, %s, %s, %s)
                ON CONFLICT (stripe_checkout_session_id) DO NOTHING
                """,
                (
                    purchase.stripe_checkout_session_id,
                    purchase.user_id,
                    purchase.plan_key.value,
                    purchase.stripe_payment_intent_id,
                    purchase.status.value,
                ),
            )
            if cursor.rowcount == 0:
                return False
            _upsert_entitlement(cursor, entitlement)
            return True

    def get_subscription_by_provider_id(self, stripe_subscription_id: str) -> Optional[Subscription]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT *
                FROM billing_subscriptions
                WHERE stripe_subscription_id = %s
                LIMIT 1
                """,
                (stripe_subscription_id,),
            )
            row = cursor.fetchone()
            return _row_to_subscription(row) if row else None

    def get_subscription_for_user(self, user_id: str) -> Optional[Subscription]:
        with self._cursor() as cursor:
            cursor.execute(
                "SELECT * FROM billing_subscriptions WHERE user_id = %s LIMIT 1",
                (user_id,),
            )
            row = cursor.fetchone()
            return _row_to_subscription(row) if row else None

    def apply_subscription_state(
        self,
        subscription: Subscription,
        entitlement: Optional[EntitlementRecord],
    ) -> Subscription:
        """Upsert the subscription mirror and, when given, the derived entitlement."""

        with self._cursor() as cursor:
            cursor.execute(
                """
                INSERT INTO billing_subscriptions (
                    user_id,
                    stripe_customer_id,
                    stripe_subscription_id,
                    stripe_price_id,
                    stripe_product_id,
                    plan_key,
                    plan_interval,
                    amount_cents,
                    currency,
                    status,
                    current_period_end,
                    cancel_at_period_end
                )
                VALUES (%(user_id)s, %(stripe_customer_id)s, %(stripe_subscription_id)s,
                        %(stripe_price_id)s, %(stripe_product_id)s, %(plan_key)s,
                        %(plan_interval)s, %(amount_cents)s, %(currency)s, %(status)s,
                        %(current_period_end)s, %(cancel_at_period_end)s)
                ON CONFLICT (user_id) DO UPDATE SET
                    stripe_customer_id = EXCLUDED.stripe_customer_id,
                    stripe_subscription_id = EXCLUDED.stripe_subscription_id,
                    stripe_price_id = EXCLUDED.stripe_price_id,
                    stripe_product_id = EXCLUDED.stripe_product_id,
                    plan_key = EXCLUDED.plan_key,
                    plan_interval = EXCLUDED.plan_interval,
                    amount_cents = EXCLUDED.amount_cents,
                    currency = EXCLUDED.currency,
                    status = EXCLUDED.status,
                    current_period_end = EXCLUDED.current_period_end,
                    cancel_at_period_end = EXCLUDED.cancel_at_period_end,
                    updated_at = NOW()
                RETURNING *
                """,
                {
                    "user_id": subscription.user_id,
                    "stripe_customer_id": subscription.stripe_customer_id,
                    "stripe_subscription_id": subscription.stripe_subscription_id,
                    "stripe_price_id": subscription.stripe_price_id,
                    "stripe_product_id": subscription.stripe_product_id,
                    "plan_key": subscription.plan_key.value if subscription.plan_key else None,
                    "plan_interval": subscription.plan_interval,
                    "amount_cents": subscription.amount_cents,
                    "currency": subscription.currency,
                    "status": subscription.status.value,
                    "current_period_end": subscription.current_period_end,
                    "cancel_at_period_end": subscription.cancel_at_period_end,
                },
            )
            row = cursor.fetchone()
            if not row:
                raise RuntimeError("Failed to persist subscription")
            if entitlement is not None:
                _upsert_entitlement(cursor, entitlement)
            return _row_to_subscription(row)

    def cancel_subscription(self, stripe_subscription_id: str, entitlement: EntitlementRecord) -> bool:
        """Mark the mirror canceled and revert the entitlement to free.

        The entitlement is left alone when the user's mirror already tracks a
        different, newer subscription. Returns whether the entitlement was written.
        """

        with self._cursor() as cursor:
            cursor.execute(
                """
                UPDATE billing_subscriptions
                SET status = %s, updated_at = NOW()
                WHERE stripe_subscription_id = %s
                """,
                (SubscriptionStatus.CANCELED.value, stripe_subscription_id),
            )
            cursor.execute(
                "SELECT stripe_subscription_id FROM billing_subscriptions WHERE user_id = %s LIMIT 1",
                (entitlement.user_id,),
            )
            current = cursor.fetchone()
            if current and current["stripe_subscription_id"] != stripe_subscription_id:
                return False
            return _upsert_entitlement(cursor, entitlement)

    def mark_subscription_past_due(
        self,
        stripe_subscription_id: str,
        entitlement: Optional[EntitlementRecord],
    ) -> Optional[Subscription]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                UPDATE billing_subscriptions
                SET status = %s, updated_at = NOW()
                WHERE stripe_subscription_id = %s
                RETURNING *
                """,
                (SubscriptionStatus.PAST_DUE.value, stripe_subscription_id),
            )
            row = cursor.fetchone()
            if not row:
                return None
            if entitlement is not None:
                _upsert_entitlement(cursor, entitlement)
            return _row_to_subscription(row)

    def get_customer_id(self, user_id: str) -> Optional[str]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT stripe_customer_id FROM billing_customers WHERE user_id = %s
                UNION ALL
                SELECT stripe_customer_id FROM billing_subscriptions
                WHERE user_id = %s AND stripe_customer_id IS NOT NULL
                LIMIT 1
                """,
                (user_id, user_id),
            )
            row = cursor.fetchone()
            return row["stripe_customer_id"] if row else None

    def save_customer_id(self, user_id: str, stripe_customer_id: str) -> str:
        """Remember the customer; a concurrent first checkout keeps the earlier id."""

        with self._cursor() as cursor:
            cursor.execute(
                """
                INSERT INTO billing_customers (user_id, stripe_customer_id)
                VALUES (%s, %s)
                ON CONFLICT (user_id) DO UPDATE SET user_id = EXCLUDED.user_id
                RETURNING stripe_customer_id
                """,
                (user_id, stripe_customer_id),
            )
            row = cursor.fetchone()
            if not row:
                raise RuntimeError("Failed to persist billing customer")
            return row["stripe_customer_id"]


__all__ = ["PostgresBillingRepository"]
