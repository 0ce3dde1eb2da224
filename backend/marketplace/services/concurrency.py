# Overview: Transaction scope, row locking and retry for service operations.

from __future__ import annotations

import time
from typing import Callable, TypeVar

from flask import current_app
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm.exc import StaleDataError

from ..errors import ConcurrencyConflictError
from ..extensions import db

T = TypeVar("T")


def lock_for_update(query):
    """
    Apply row-level locking for critical operations.

    NOTE: SQLite ignores SELECT ... FOR UPDATE, but other DBs will honor it.
    Status checks that must hold under SQLite are also written as
    conditional updates (see payout_service).
    """
    return query.with_for_update()


UNIQUE_VIOLATION_MARKERS = ("unique constraint", "duplicate key", "duplicate entry")


def is_unique_race(exc: IntegrityError) -> bool:
    """
    True when an IntegrityError is a unique-key collision.

    Postgres names the constraint (our race keys are all uq_*); SQLite and
    MySQL only describe it in the message.
    """
    constraint = getattr(getattr(exc.orig, "diag", None), "constraint_name", None)
    if constraint:
        return constraint.startswith("uq_") or constraint.endswith("_key")
    message = str(exc.orig).lower()
    return any(marker in message for marker in UNIQUE_VIOLATION_MARKERS)


class UnitOfWork:
    """
    One transaction scope for one request.

    WHY: Every read that a state transition depends on must happen inside
    the same transaction as the write. Services receive the unit of work
    explicitly instead of reaching for a global session, and side effects
    that must not roll back with the business change (outbound
    notifications) are queued with after_commit().

    Usage:
        result = payout_service.release_payout(UnitOfWork(), purchase_order_id, actor)

    where release_payout defines `_op(uow)` and returns `uow.run(_op)`.
    """

    def __init__(self, session=None, *, attempts: int | None = None, backoff_base: float = 0.1):
        self.session = session if session is not None else db.session
        self.attempts = attempts
        self.backoff_base = backoff_base
        self._after_commit: list[Callable[[], None]] = []

    def after_commit(self, callback: Callable[[], None]) -> None:
        self._after_commit.append(callback)

    def rollback(self) -> None:
        self.session.rollback()
        self._after_commit.clear()

    def run(self, func: Callable[["UnitOfWork"], T]) -> T:
        """
        Execute func(self) in a transaction and commit.

        Retries on OperationalError (deadlocks, locks), StaleDataError
        (optimistic locking conflicts) and unique-key IntegrityErrors (a
        concurrent insert won the race). The whole function is replayed so
        every precondition is re-read. Any other exception, including a
        foreign key or NOT NULL violation, rolls back and propagates.

        Raises:
            ConcurrencyConflictError: When retries are exhausted
        """
        attempts = self.attempts or current_app.config.get("TXN_RETRY_ATTEMPTS", 3)
        for attempt in range(attempts):
            try:
                result = func(self)
                self.session.commit()
            except (OperationalError, StaleDataError, IntegrityError) as exc:
                self.rollback()
                if isinstance(exc, IntegrityError) and not is_unique_race(exc):
                    raise
                if attempt >= attempts - 1:
                    current_app.logger.warning("Transaction conflict after %s attempts: %s", attempts, exc)
                    raise ConcurrencyConflictError() from exc
                time.sleep(self.backoff_base * (2 ** attempt))
                continue
            except Exception:
                self.rollback()
                raise
            self._run_after_commit()
            return result
        raise ConcurrencyConflictError()

    def _run_after_commit(self) -> None:
        callbacks, self._after_commit = self._after_commit, []
        for callback in callbacks:
            callback()
