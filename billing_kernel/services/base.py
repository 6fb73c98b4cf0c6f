"""
BaseService -- abstract base for all billing kernel services.

Responsibility:
    Provides the common constructor and session-handling contract for
    every write service.  Concrete services receive a SQLAlchemy
    ``Session`` that they use via ``session.flush()`` -- never
    ``session.commit()``.

Architecture position:
    Kernel > Services -- imperative shell infrastructure.

Invariants enforced:
    - Transaction boundaries: services flush within the caller's
      transaction and never commit or rollback themselves.  A bulk
      assignment is atomic because the caller's ``session_scope()``
      commits or rolls back the whole batch.

Failure modes:
    - A subclass calling ``session.commit()`` breaks the atomicity of
      multi-step operations such as bulk assignment.
"""

from abc import ABC
from typing import Generic, TypeVar

from sqlalchemy.orm import Session

from billing_kernel.db.base import Base

ModelType = TypeVar("ModelType", bound=Base)


class BaseService(ABC, Generic[ModelType]):
    """
    Abstract base class for billing kernel services.

    Guarantees:
        - The service never calls ``session.commit()`` or
          ``session.rollback()``.

    Non-goals:
        - Does NOT provide query-only (read) methods -- those belong
          in ``billing_kernel/selectors/``.
    """

    def __init__(self, session: Session):
        self.session = session
