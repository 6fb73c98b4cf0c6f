"""
Module: billing_kernel.selectors.base
Responsibility: Abstract base class for all read-only query selectors.  Selectors
    are the query side of the kernel, giving structured read access to tabs,
    billing groups, rules and overrides without mutation capability.
Architecture position: Kernel > Selectors.  May import from db/base.py,
    models/ and the pure domain (DTOs, money arithmetic).  MUST NOT import
    from services/ or outer layers.

Invariants enforced:
    - Read-only access: Selectors accept a Session from the caller but MUST NOT
      call session.add(), session.delete(), session.commit(), or session.flush().
    - DTO return convention: Selectors return frozen dataclasses or computed
      results, NOT raw ORM model instances.
    - Session ownership: the caller owns the session and its transaction scope.
"""

from abc import ABC
from typing import Generic, TypeVar

from sqlalchemy.orm import Session

from billing_kernel.db.base import Base

ModelType = TypeVar("ModelType", bound=Base)


class BaseSelector(ABC, Generic[ModelType]):
    """
    Abstract base class for all selectors.

    Guarantees:
        - session is stored as a public attribute for subclass query use.
        - No commit, flush, add, or delete operations are performed.
    """

    def __init__(self, session: Session):
        self.session = session
