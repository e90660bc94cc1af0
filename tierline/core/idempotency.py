"""
tierline/core/idempotency.py
Single-writer run locks keyed by an idempotency key.

A lock is a row in run_locks. Acquisition is an INSERT guarded by the
primary key, so two writers racing for the same key cannot both win. Locks
carry an expiry so a crashed holder does not block the key forever.
"""

from datetime import datetime, timedelta
from typing import Optional
from uuid import uuid4

from sqlalchemy import delete, insert, select
from sqlalchemy.exc import IntegrityError

from tierline.core.clock import ensure_utc, normalize_now
from tierline.core.database import get_db_session, run_locks


def acquire_lock(
    key: str,
    *,
    scope: str = "generic",
    ttl_seconds: int = 900,
    owner: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Optional[str]:
    """
    Try to take the lock for `key`.

    Returns:
        The owner token when acquired, None when another live holder has it.
    """
    now_dt = normalize_now(now)
    token = owner or str(uuid4())
    expires_at = now_dt + timedelta(seconds=ttl_seconds)

    with get_db_session() as session:
        existing = session.execute(
            select(run_locks.c.owner, run_locks.c.expires_at).where(run_locks.c.key == key)
        ).first()
        if existing and ensure_utc(existing.expires_at) > now_dt:
            return None
        if existing:
            # Expired holder: take over
            session.execute(
                delete(run_locks).where(run_locks.c.key == key).where(run_locks.c.owner == existing.owner)
            )

    try:
        with get_db_session() as session:
            session.execute(
                insert(run_locks).values(
                    key=key,
                    scope=scope,
                    owner=token,
                    acquired_at=now_dt,
                    expires_at=expires_at,
                )
            )
    except IntegrityError:
        # Lost the race to a concurrent writer
        return None
    return token


def release_lock(key: str, owner: str) -> bool:
    """Release the lock if `owner` still holds it."""
    with get_db_session() as session:
        result = session.execute(
            delete(run_locks).where(run_locks.c.key == key).where(run_locks.c.owner == owner)
        )
        return bool(result.rowcount)


def is_locked(key: str, now: Optional[datetime] = None) -> bool:
    now_dt = normalize_now(now)
    with get_db_session() as session:
        row = session.execute(
            select(run_locks.c.expires_at).where(run_locks.c.key == key)
        ).first()
    return bool(row and ensure_utc(row.expires_at) > now_dt)
