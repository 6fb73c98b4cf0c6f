"""
ORM-level append-only enforcement for BillingGroupOverride.

===============================================================================
PROTECTED ENTITIES
===============================================================================

Entity                 | Protected From       | Why
-----------------------|----------------------|---------------------------------
BillingGroupOverride   | ANY update or delete | Audit trail of manual assignments

Override rows record who moved a line item, from which group, to which
group, and why.  A modified or deleted override makes the balance history
of a billing group unexplainable, so the ORM refuses both.

===============================================================================
USAGE
===============================================================================

Called automatically during application startup:

    from billing_kernel.db.immutability import register_immutability_listeners
    register_immutability_listeners()  # Called once at startup

To temporarily disable (TESTS ONLY):

    from billing_kernel.db.immutability import unregister_immutability_listeners
    unregister_immutability_listeners()
"""

from sqlalchemy import event

from billing_kernel.exceptions import ImmutabilityViolationError
from billing_kernel.logging_config import get_logger

logger = get_logger("db.immutability")


def _check_override_update(mapper, connection, target):
    """Block every UPDATE of a BillingGroupOverride row."""
    logger.error(
        "immutability_violation_blocked",
        extra={
            "entity_type": "BillingGroupOverride",
            "entity_id": str(target.id),
            "operation": "UPDATE",
        },
    )
    raise ImmutabilityViolationError(
        entity_type="BillingGroupOverride",
        entity_id=str(target.id),
        reason="Override records are append-only",
    )


def _check_override_delete(mapper, connection, target):
    """Block every DELETE of a BillingGroupOverride row."""
    logger.error(
        "immutability_violation_blocked",
        extra={
            "entity_type": "BillingGroupOverride",
            "entity_id": str(target.id),
            "operation": "DELETE",
        },
    )
    raise ImmutabilityViolationError(
        entity_type="BillingGroupOverride",
        entity_id=str(target.id),
        reason="Override records cannot be deleted",
    )


def register_immutability_listeners():
    """Register the override append-only listeners (idempotent)."""
    from billing_kernel.models.billing_group import BillingGroupOverride

    if not event.contains(BillingGroupOverride, "before_update", _check_override_update):
        event.listen(BillingGroupOverride, "before_update", _check_override_update)
    if not event.contains(BillingGroupOverride, "before_delete", _check_override_delete):
        event.listen(BillingGroupOverride, "before_delete", _check_override_delete)


def _safe_remove_listener(target, event_name, listener_fn):
    """Remove an event listener, ignoring it if not registered."""
    if event.contains(target, event_name, listener_fn):
        event.remove(target, event_name, listener_fn)


def unregister_immutability_listeners():
    """
    Remove the override listeners.

    WARNING: Only use this in tests.
    """
    from billing_kernel.models.billing_group import BillingGroupOverride

    _safe_remove_listener(BillingGroupOverride, "before_update", _check_override_update)
    _safe_remove_listener(BillingGroupOverride, "before_delete", _check_override_delete)
