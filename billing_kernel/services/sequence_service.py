"""
SequenceService -- monotonic sequence allocation via locked counter rows.

Responsibility:
    Provides strictly increasing numbers for billing group numbers
    (``BG-000042``) and for rule creation order, which is the tie-break
    between rules of equal priority.  Uses a dedicated counter table with
    row-level locking (``SELECT ... FOR UPDATE``) so concurrent creators
    never receive the same value.

Architecture position:
    Kernel > Services -- imperative shell infrastructure.
    Called by BillingGroupService.

Invariants enforced:
    - Monotonicity: the locked counter row is the sole source of truth for
      the next value.  The aggregate-max-plus-one pattern is never used.
    - Transactional: the increment is only visible after the caller's
      transaction commits.  Rollback returns the value.

Failure modes:
    - IntegrityError on first use when a concurrent creator wins the race
      is absorbed by a savepoint rollback and a re-read of the winner's row.
"""

from sqlalchemy import BigInteger, String, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Mapped, Session, mapped_column

from billing_kernel.db.base import Base
from billing_kernel.logging_config import get_logger

logger = get_logger("services.sequence")


class SequenceCounter(Base):
    """
    Sequence counter table.

    Each row represents a named sequence with its current value.
    Row-level locking ensures monotonicity under concurrency.
    """

    __tablename__ = "sequence_counters"

    name: Mapped[str] = mapped_column(
        String(50),
        nullable=False,
        unique=True,
    )

    current_value: Mapped[int] = mapped_column(
        BigInteger,
        nullable=False,
        default=0,
    )


class SequenceService:
    """
    Service for generating transactional sequence numbers.

    Guarantees:
        - Strictly monotonic values per sequence name.
        - ``SELECT ... FOR UPDATE`` serializes concurrent allocations.

    Non-goals:
        - Does NOT call ``session.commit()`` -- caller controls boundaries.
    """

    BILLING_GROUP = "billing_group"
    BILLING_GROUP_RULE = "billing_group_rule"

    def __init__(self, session: Session):
        self._session = session

    def _locked_counter(self, sequence_name: str) -> SequenceCounter | None:
        return self._session.execute(
            select(SequenceCounter)
            .where(SequenceCounter.name == sequence_name)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()

    def next_value(self, sequence_name: str) -> int:
        """
        Get the next value for a named sequence.

        Postconditions:
            - Returns an integer > 0 strictly greater than any value
              previously returned for this sequence name.
            - The counter row stays locked until the transaction completes.
        """
        counter = self._locked_counter(sequence_name)

        if counter is None:
            # First use.  A savepoint keeps a lost creation race from
            # rolling back the caller's other work.
            savepoint = self._session.begin_nested()
            try:
                counter = SequenceCounter(name=sequence_name, current_value=1)
                self._session.add(counter)
                self._session.flush()
                savepoint.commit()
                logger.debug(
                    "sequence_allocated",
                    extra={"sequence_name": sequence_name, "value": 1},
                )
                return 1
            except IntegrityError:
                savepoint.rollback()
                logger.debug(
                    "sequence_counter_race_retry",
                    extra={"sequence_name": sequence_name},
                )
                counter = self._locked_counter(sequence_name)
                if counter is None:
                    raise

        counter.current_value += 1
        self._session.flush()
        logger.debug(
            "sequence_allocated",
            extra={"sequence_name": sequence_name, "value": counter.current_value},
        )
        return counter.current_value

    def current_value(self, sequence_name: str) -> int | None:
        """Current value of a sequence without incrementing (None if unused)."""
        counter = self._session.execute(
            select(SequenceCounter)
            .where(SequenceCounter.name == sequence_name)
        ).scalar_one_or_none()

        return counter.current_value if counter else None

    def initialize_sequences(self) -> None:
        """
        Initialize all well-known sequences.

        Called during database setup to ensure sequences exist.
        """
        for name in [self.BILLING_GROUP, self.BILLING_GROUP_RULE]:
            existing = self._session.execute(
                select(SequenceCounter)
                .where(SequenceCounter.name == name)
            ).scalar_one_or_none()

            if existing is None:
                self._session.add(SequenceCounter(name=name, current_value=0))

        self._session.flush()
