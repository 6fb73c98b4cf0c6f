"""
Typed Exception Hierarchy for the Billing Kernel.

===============================================================================
WHY TYPED EXCEPTIONS
===============================================================================

Callers (HTTP handlers, batch jobs) render a specific message for each
failure kind: "that group belongs to another tab" is not the same answer as
"that line item does not exist".  Matching on message text is fragile, so:

  1. Every error has a TYPED exception class (catch by type, not message)
  2. Every exception has a CODE attribute (machine-readable, API-safe)
  3. Exceptions carry structured DATA (not just a message string)

Example:
    try:
        assignments.assign_manual(item_id, group_id, actor_id=actor)
    except CrossTabAssignmentError as e:
        return {"error": e.code, "tab_id": e.item_tab_id}

===============================================================================
EXCEPTION HIERARCHY
===============================================================================

    BillingKernelError (base)
    |
    +-- ValidationError
    |   +-- RuleValidationError
    |   +-- BillingGroupValidationError
    |   +-- LineItemValidationError
    |   +-- PayerIdentityError
    |   +-- BillingGroupParentError
    |   +-- InvalidDepositAmountError
    |   +-- UnknownTemplateError
    |
    +-- NotFoundError
    |   +-- TabNotFoundError
    |   +-- InvoiceNotFoundError
    |   +-- LineItemNotFoundError
    |   +-- BillingGroupNotFoundError
    |   +-- RuleNotFoundError
    |
    +-- ConflictError
    |   +-- CrossTabAssignmentError
    |   +-- BillingGroupClosedError
    |   +-- NoBillingGroupsError
    |   +-- NoDepositConfiguredError
    |   +-- DepositExhaustedError
    |   +-- BillingGroupsAlreadyEnabledError
    |   +-- BillingGroupReferencedError
    |
    +-- ImmutabilityError
        +-- ImmutabilityViolationError

===============================================================================
ERROR CODES - QUICK REFERENCE
===============================================================================

Category     | Code                          | When Raised
-------------|-------------------------------|-------------------------------------
Validation   | RULE_VALIDATION_FAILED        | Malformed conditions/priority/action
             | BILLING_GROUP_INVALID         | Negative limit/deposit, empty name
             | LINE_ITEM_INVALID             | Bad quantity, price, tax or discount
             | PAYER_IDENTITY_CONFLICT       | Both payer email and organization
             | BILLING_GROUP_PARENT_INVALID  | Not exactly one of tab / invoice
             | INVALID_DEPOSIT_AMOUNT        | Deposit amount <= 0 or not finite
             | UNKNOWN_TEMPLATE              | Template name not in catalogue
-------------|-------------------------------|-------------------------------------
Not found    | TAB_NOT_FOUND                 | Tab ID doesn't exist
             | INVOICE_NOT_FOUND             | Invoice ID doesn't exist
             | LINE_ITEM_NOT_FOUND           | Line item ID doesn't exist
             | BILLING_GROUP_NOT_FOUND       | Billing group ID doesn't exist
             | RULE_NOT_FOUND                | Rule ID doesn't exist
-------------|-------------------------------|-------------------------------------
Conflict     | CROSS_TAB_ASSIGNMENT          | Group is on a different tab
             | BILLING_GROUP_CLOSED          | Assigning to a closed group
             | NO_BILLING_GROUPS             | Automatic assignment, zero groups
             | NO_DEPOSIT_CONFIGURED         | Group has no deposit amount
             | DEPOSIT_EXHAUSTED             | Nothing left to apply
             | BILLING_GROUPS_ALREADY_ENABLED| Tab already has billing groups
             | BILLING_GROUP_REFERENCED      | Hard delete of a referenced group
-------------|-------------------------------|-------------------------------------
Immutability | IMMUTABILITY_VIOLATION        | Updating/deleting an override record

Persistence failures (``sqlalchemy.exc.*``) are NOT wrapped: they propagate
as-is and the caller's transaction scope rolls back.  The kernel never
retries.
"""

from decimal import Decimal


class BillingKernelError(Exception):
    """
    Base exception for all billing kernel errors.

    All subclasses must have a `code` class attribute for machine-readable
    error identification.
    """

    code: str = "BILLING_KERNEL_ERROR"


# Validation errors


class ValidationError(BillingKernelError):
    """Base exception for input rejected before anything is persisted."""

    code: str = "VALIDATION_ERROR"


class RuleValidationError(ValidationError):
    """Rule conditions, priority, or action are malformed."""

    code: str = "RULE_VALIDATION_FAILED"

    def __init__(self, field: str, reason: str):
        self.field = field
        self.reason = reason
        super().__init__(f"Invalid rule {field}: {reason}")


class BillingGroupValidationError(ValidationError):
    """Billing group attributes are invalid."""

    code: str = "BILLING_GROUP_INVALID"

    def __init__(self, field: str, reason: str):
        self.field = field
        self.reason = reason
        super().__init__(f"Invalid billing group {field}: {reason}")


class LineItemValidationError(ValidationError):
    """Line item or invoice line quantity, price, or rate is invalid."""

    code: str = "LINE_ITEM_INVALID"

    def __init__(self, field: str, reason: str):
        self.field = field
        self.reason = reason
        super().__init__(f"Invalid line item {field}: {reason}")


class PayerIdentityError(ValidationError):
    """A billing group may name at most one canonical payer."""

    code: str = "PAYER_IDENTITY_CONFLICT"

    def __init__(self, payer_email: str, payer_organization_id: str):
        self.payer_email = payer_email
        self.payer_organization_id = payer_organization_id
        super().__init__(
            "Billing group payer must be an email or an organization, not both "
            f"(email={payer_email}, organization={payer_organization_id})"
        )


class BillingGroupParentError(ValidationError):
    """A billing group belongs to exactly one tab or one invoice."""

    code: str = "BILLING_GROUP_PARENT_INVALID"

    def __init__(self, tab_id: str | None, invoice_id: str | None):
        self.tab_id = tab_id
        self.invoice_id = invoice_id
        super().__init__(
            "Billing group must belong to exactly one tab or one invoice "
            f"(tab={tab_id}, invoice={invoice_id})"
        )


class InvalidDepositAmountError(ValidationError):
    """Deposit application amount must be a positive, finite number."""

    code: str = "INVALID_DEPOSIT_AMOUNT"

    def __init__(self, amount: Decimal | str, reason: str = "must be positive"):
        self.amount = amount
        self.reason = reason
        super().__init__(f"Deposit amount to apply {reason}, got {amount}")


class UnknownTemplateError(ValidationError):
    """Billing group template name is not in the catalogue."""

    code: str = "UNKNOWN_TEMPLATE"

    def __init__(self, template: str, available: list[str]):
        self.template = template
        self.available = available
        super().__init__(
            f"Unknown billing group template '{template}' "
            f"(available: {', '.join(available)})"
        )


# Not-found errors


class NotFoundError(BillingKernelError):
    """Base exception for unknown identifiers."""

    code: str = "NOT_FOUND"


class TabNotFoundError(NotFoundError):
    """Tab doesn't exist."""

    code: str = "TAB_NOT_FOUND"

    def __init__(self, tab_id: str):
        self.tab_id = tab_id
        super().__init__(f"Tab not found: {tab_id}")


class InvoiceNotFoundError(NotFoundError):
    """Invoice doesn't exist."""

    code: str = "INVOICE_NOT_FOUND"

    def __init__(self, invoice_id: str):
        self.invoice_id = invoice_id
        super().__init__(f"Invoice not found: {invoice_id}")


class LineItemNotFoundError(NotFoundError):
    """Line item doesn't exist."""

    code: str = "LINE_ITEM_NOT_FOUND"

    def __init__(self, line_item_id: str):
        self.line_item_id = line_item_id
        super().__init__(f"Line item not found: {line_item_id}")


class BillingGroupNotFoundError(NotFoundError):
    """Billing group doesn't exist."""

    code: str = "BILLING_GROUP_NOT_FOUND"

    def __init__(self, billing_group_id: str):
        self.billing_group_id = billing_group_id
        super().__init__(f"Billing group not found: {billing_group_id}")


class RuleNotFoundError(NotFoundError):
    """Billing group rule doesn't exist."""

    code: str = "RULE_NOT_FOUND"

    def __init__(self, rule_id: str):
        self.rule_id = rule_id
        super().__init__(f"Billing group rule not found: {rule_id}")


# Conflict / state errors


class ConflictError(BillingKernelError):
    """Base exception for requests that contradict current state."""

    code: str = "CONFLICT"


class CrossTabAssignmentError(ConflictError):
    """Target billing group is not on the line item's tab."""

    code: str = "CROSS_TAB_ASSIGNMENT"

    def __init__(
        self,
        line_item_id: str,
        billing_group_id: str,
        item_tab_id: str,
        group_tab_id: str | None,
    ):
        self.line_item_id = line_item_id
        self.billing_group_id = billing_group_id
        self.item_tab_id = item_tab_id
        self.group_tab_id = group_tab_id
        super().__init__(
            f"Line item {line_item_id} (tab {item_tab_id}) cannot be assigned to "
            f"billing group {billing_group_id} (tab {group_tab_id})"
        )


class BillingGroupClosedError(ConflictError):
    """Billing group is closed and accepts no new items."""

    code: str = "BILLING_GROUP_CLOSED"

    def __init__(self, billing_group_id: str):
        self.billing_group_id = billing_group_id
        super().__init__(f"Billing group {billing_group_id} is closed")


class NoBillingGroupsError(ConflictError):
    """Automatic assignment has no target group."""

    code: str = "NO_BILLING_GROUPS"

    def __init__(self, tab_id: str):
        self.tab_id = tab_id
        super().__init__(f"No billing groups available for assignment on tab {tab_id}")


class NoDepositConfiguredError(ConflictError):
    """Billing group has no deposit to draw down."""

    code: str = "NO_DEPOSIT_CONFIGURED"

    def __init__(self, billing_group_id: str):
        self.billing_group_id = billing_group_id
        super().__init__(f"Billing group {billing_group_id} has no deposit configured")


class DepositExhaustedError(ConflictError):
    """No deposit capacity remains on the billing group."""

    code: str = "DEPOSIT_EXHAUSTED"

    def __init__(
        self,
        billing_group_id: str,
        deposit_amount: Decimal,
        deposit_applied: Decimal,
    ):
        self.billing_group_id = billing_group_id
        self.deposit_amount = deposit_amount
        self.deposit_applied = deposit_applied
        super().__init__(
            f"No deposit available to apply on billing group {billing_group_id} "
            f"(deposit {deposit_amount}, applied {deposit_applied})"
        )


class BillingGroupsAlreadyEnabledError(ConflictError):
    """Tab already has billing groups."""

    code: str = "BILLING_GROUPS_ALREADY_ENABLED"

    def __init__(self, tab_id: str, existing_count: int):
        self.tab_id = tab_id
        self.existing_count = existing_count
        super().__init__(
            f"Billing groups already enabled on tab {tab_id} "
            f"({existing_count} existing)"
        )


class BillingGroupReferencedError(ConflictError):
    """Billing group is still referenced and cannot be hard-deleted."""

    code: str = "BILLING_GROUP_REFERENCED"

    def __init__(self, billing_group_id: str, line_items: int, overrides: int):
        self.billing_group_id = billing_group_id
        self.line_items = line_items
        self.overrides = overrides
        super().__init__(
            f"Billing group {billing_group_id} is referenced by {line_items} "
            f"line item(s) and {overrides} override record(s); close it instead"
        )


# Immutability errors


class ImmutabilityError(BillingKernelError):
    """Base exception for immutability-related errors."""

    code: str = "IMMUTABILITY_ERROR"


class ImmutabilityViolationError(ImmutabilityError):
    """
    Attempted to modify or delete an immutable record.

    BillingGroupOverride rows are append-only audit records.
    """

    code: str = "IMMUTABILITY_VIOLATION"

    def __init__(self, entity_type: str, entity_id: str, reason: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.reason = reason
        super().__init__(
            f"Immutability violation on {entity_type} {entity_id}: {reason}"
        )
