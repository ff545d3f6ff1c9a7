"""
Error taxonomy for the identity engine.

- NotFoundError: identity/user missing or deleted. Surfaced, never retried.
- ConflictError: a name or user is already held by a different identity.
  Surfaced; the caller must pick another name or merge instead.
- RaceLostError: a conditional create/claim lost to a concurrent equivalent
  operation. Always recovered inside the engine by re-reading the winner.
- StoreUnavailableError: the database could not be reached. Fatal.

Partial propagation is not an exception: see PropagationResult.
"""

from contextlib import contextmanager
from typing import Generator, Optional

from sqlalchemy.exc import InterfaceError, OperationalError


class IdentityError(Exception):
    """Base class for identity engine errors."""


class NotFoundError(IdentityError):
    """Referenced identity or user does not exist or is deleted."""

    def __init__(self, entity: str, entity_id: object):
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"{entity} {entity_id} not found")


class ConflictError(IdentityError):
    """A name, alias or user is already claimed by a different identity."""

    def __init__(self, message: str, identity_id: Optional[int] = None):
        self.identity_id = identity_id
        super().__init__(message)


class RaceLostError(IdentityError):
    """A conditional write lost to a concurrent writer."""


class StoreUnavailableError(IdentityError):
    """The identity store could not be reached."""


@contextmanager
def translate_store_errors() -> Generator[None, None, None]:
    """
    Re-raise connection-level database failures as StoreUnavailableError.

    Integrity errors are left alone: they are either recovered locally
    (lost races) or are genuine bugs that should surface as-is.
    """
    try:
        yield
    except (OperationalError, InterfaceError) as exc:
        raise StoreUnavailableError(str(exc.orig or exc)) from exc
