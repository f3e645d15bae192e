"""Bounded-retry transaction runner."""

from __future__ import annotations

import logging
import os
import time
from typing import Callable, Optional, TypeVar

from dotenv import load_dotenv
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session, sessionmaker

from ..errors import ConflictError, TransientFailure

logger = logging.getLogger(__name__)

load_dotenv()
DEFAULT_MAX_ATTEMPTS = int(os.getenv("TX_MAX_ATTEMPTS", "5"))
DEFAULT_RETRY_BACKOFF = float(os.getenv("TX_RETRY_BACKOFF", "0.05"))

T = TypeVar("T")

# Errors that mean "another session got there first". Lock timeouts and
# serialization failures surface as OperationalError on every supported
# backend; IntegrityError only counts when it comes from a constraint that two
# sessions can race to satisfy (see RACE_CONSTRAINTS).
RETRYABLE_ERRORS = (ConflictError, IntegrityError, OperationalError)

# Unique constraints guarding rows created lazily inside transactions: the
# per-user lock row and the claim marker. PostgreSQL reports the constraint
# name, SQLite only the columns, so both spellings are matched.
RACE_CONSTRAINTS = {
    "uq_chance_override_user": "chance_overrides.campaign_id, chance_overrides.user_id",
    "uq_claimed_grant_source": (
        "claimed_grants.campaign_id, claimed_grants.user_id, claimed_grants.source_key"
    ),
}


def is_retryable(exc: Exception) -> bool:
    """Whether ``exc`` means the transaction lost a race and may be re-run."""

    if isinstance(exc, IntegrityError):
        message = str(exc.orig)
        return any(
            name in message or columns in message
            for name, columns in RACE_CONSTRAINTS.items()
        )
    return isinstance(exc, RETRYABLE_ERRORS)


def run_transaction(
    session_factory: sessionmaker,
    work: Callable[[Session], T],
    *,
    max_attempts: Optional[int] = None,
    backoff: Optional[float] = None,
    label: str = "transaction",
) -> T:
    """Run ``work`` inside a fresh transaction, retrying on conflicts.

    ``work`` receives an open session whose transaction commits when it
    returns and rolls back when it raises. Because the body can run more than
    once it must re-read everything it depends on and must not have side
    effects outside the session.

    Parameters
    ----------
    session_factory : sessionmaker
        Factory producing sessions; use :func:`instantwin.db.engine.get_sessionmaker`
        so returned ORM objects stay readable after commit.
    work : Callable[[Session], T]
        Transaction body.
    max_attempts : Optional[int], default: None
        Total attempts before giving up. Defaults to ``TX_MAX_ATTEMPTS``.
    backoff : Optional[float], default: None
        Base delay in seconds between attempts, doubled after each failure.
    label : str
        Name used in log messages.

    Returns
    -------
    T
        Whatever ``work`` returned on the successful attempt.

    Raises
    ------
    TransientFailure
        If every attempt ended in a conflict.
    IntegrityError
        For constraint violations other than the races in ``RACE_CONSTRAINTS``.
    """

    attempts = max_attempts or DEFAULT_MAX_ATTEMPTS
    delay = DEFAULT_RETRY_BACKOFF if backoff is None else backoff

    last_error: Optional[Exception] = None
    for attempt in range(1, attempts + 1):
        session = session_factory()
        try:
            with session.begin():
                return work(session)
        except RETRYABLE_ERRORS as exc:
            if not is_retryable(exc):
                raise
            last_error = exc
            logger.warning(
                f"{label} conflicted on attempt {attempt}/{attempts}: {exc.__class__.__name__}"
            )
            if attempt < attempts and delay > 0:
                time.sleep(delay * (2 ** (attempt - 1)))
        finally:
            session.close()

    raise TransientFailure(
        f"{label} did not complete after {attempts} attempts"
    ) from last_error


__all__ = [
    "run_transaction",
    "is_retryable",
    "DEFAULT_MAX_ATTEMPTS",
    "RACE_CONSTRAINTS",
    "RETRYABLE_ERRORS",
]
