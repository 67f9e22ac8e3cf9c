from __future__ import annotations

import os
from datetime import datetime, timedelta
from functools import lru_cache
from typing import Any

import psycopg
from psycopg.rows import dict_row


def _database_url() -> str:
    url = os.getenv("DATABASE_URL")
    if not url:
        raise RuntimeError("DATABASE_URL is not set.")
    return url


def get_connection():
    return psycopg.connect(_database_url(), row_factory=dict_row)


def normalize_email(email: str | None) -> str:
    return (email or "").strip().lower()


@lru_cache(maxsize=1)
def ensure_schema() -> None:
    with get_connection() as conn:
        with conn.cursor() as cur:
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS timed_entitlements (
                    email TEXT PRIMARY KEY,
                    tier TEXT NOT NULL,
                    amount INTEGER NOT NULL,
                    paid_at TIMESTAMPTZ NOT NULL,
                    expires_at TIMESTAMPTZ NOT NULL,
                    updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
                );
                """
            )
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS one_shot_entitlements (
                    id BIGSERIAL PRIMARY KEY,
                    email TEXT NOT NULL,
                    tier TEXT NOT NULL,
                    amount INTEGER NOT NULL,
                    payment_id TEXT UNIQUE,
                    payment_link_id TEXT,
                    paid_at TIMESTAMPTZ NOT NULL DEFAULT now()
                );
                """
            )
            cur.execute(
                """
                CREATE INDEX IF NOT EXISTS one_shot_entitlements_email_idx
                ON one_shot_entitlements (email, paid_at);
                """
            )


def upsert_timed_entitlement(
    *,
    email: str,
    tier: str,
    paid_at: datetime,
    duration_days: int,
    amount: int,
) -> dict[str, Any] | None:
    """Create or replace the single timed record for ``email``.

    The window restarts at ``paid_at``; it never stacks. A row with a newer
    ``paid_at`` is left alone and ``None`` is returned.
    """
    ensure_schema()
    expires_at = paid_at + timedelta(days=duration_days)
    with get_connection() as conn:
        with conn.cursor() as cur:
            cur.execute(
                """
                INSERT INTO timed_entitlements (email, tier, amount, paid_at, expires_at)
                VALUES (%s, %s, %s, %s, %s)
                ON CONFLICT (email) DO UPDATE SET
                    tier = EXCLUDED.tier,
                    amount = EXCLUDED.amount,
                    paid_at = EXCLUDED.paid_at,
                    expires_at = EXCLUDED.expires_at,
                    updated_at = now()
                WHERE timed_entitlements.paid_at <= EXCLUDED.paid_at
                RETURNING *
                """,
                (normalize_email(email), tier, amount, paid_at, expires_at),
            )
            row = cur.fetchone()
            return dict(row) if row else None


def append_one_shot_entitlement(
    *,
    email: str,
    tier: str,
    amount: int,
    payment_id: str | None,
    payment_link_id: str | None,
    paid_at: datetime,
) -> bool:
    """Insert a one-shot record. Returns False when ``payment_id`` was already granted."""
    ensure_schema()
    with get_connection() as conn:
        with conn.cursor() as cur:
            cur.execute(
                """
                INSERT INTO one_shot_entitlements (
                    email,
                    tier,
                    amount,
                    payment_id,
                    payment_link_id,
                    paid_at
                )
                VALUES (%s, %s, %s, %s, %s, %s)
                ON CONFLICT (payment_id) DO NOTHING
                RETURNING id
                """,
                (normalize_email(email), tier, amount, payment_id, payment_link_id, paid_at),
            )
            return cur.fetchone() is not None


def find_timed_entitlement(email: str) -> dict[str, Any] | None:
    ensure_schema()
    with get_connection() as conn:
        with conn.cursor() as cur:
            cur.execute(
                "SELECT * FROM timed_entitlements WHERE email = %s",
                (normalize_email(email),),
            )
            row = cur.fetchone()
            return dict(row) if row else None


def find_one_shot_entitlement(email: str) -> dict[str, Any] | None:
    ensure_schema()
    with get_connection() as conn:
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT *
                FROM one_shot_entitlements
                WHERE email = %s
                ORDER BY paid_at ASC, id ASC
                LIMIT 1
                """,
                (normalize_email(email),),
            )
            row = cur.fetchone()
            return dict(row) if row else None


def delete_one_shot_entitlement(email: str, amount: int) -> bool:
    """Consume the oldest one-shot record matching ``email`` and ``amount``."""
    ensure_schema()
    with get_connection() as conn:
        with conn.cursor() as cur:
            cur.execute(
                """
                DELETE FROM one_shot_entitlements
                WHERE id = (
                    SELECT id
                    FROM one_shot_entitlements
                    WHERE email = %s AND amount = %s
                    ORDER BY paid_at ASC, id ASC
                    LIMIT 1
                    FOR UPDATE SKIP LOCKED
                )
                RETURNING id
                """,
                (normalize_email(email), amount),
            )
            return cur.fetchone() is not None
