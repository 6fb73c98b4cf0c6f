"""Services for the billing kernel (write side)."""

from billing_kernel.services.assignment_service import AssignmentService
from billing_kernel.services.balance_ledger import BalanceLedger
from billing_kernel.services.billing_group_service import BillingGroupService
from billing_kernel.services.sequence_service import SequenceService
from billing_kernel.services.tab_service import TabService

__all__ = [
    "AssignmentService",
    "BalanceLedger",
    "BillingGroupService",
    "SequenceService",
    "TabService",
]
