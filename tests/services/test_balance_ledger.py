"""
BalanceLedger: balance re-derivation, deposits and credit limits.

Invariants covered:
- current_balance always equals the sum of what points at the group
- recompute is idempotent
- deposit_applied never exceeds deposit_amount
"""

from decimal import Decimal
from uuid import uuid4

import pytest

from billing_kernel.exceptions import (
    BillingGroupNotFoundError,
    DepositExhaustedError,
    InvalidDepositAmountError,
    NoDepositConfiguredError,
)
from billing_kernel.models.billing_group import BillingGroup


class TestRecomputeBalance:
    def test_empty_group_is_zero(self, create_tab, create_group, balance_ledger):
        group = create_group(create_tab().id, "Empty")
        assert balance_ledger.recompute_balance(group.id) == Decimal("0.00")

    def test_idempotent(self, hotel_tab, add_item, assignment_service, balance_ledger):
        tab = hotel_tab["tab"]
        for price in ("10.10", "20.20", "30.30"):
            assignment_service.assign_automatic(add_item(tab.id, price, category="food").id)

        first = balance_ledger.recompute_balance(hotel_tab["restaurant"].id)
        second = balance_ledger.recompute_balance(hotel_tab["restaurant"].id)

        assert first == second == Decimal("60.60")

    def test_quantity_times_price(self, hotel_tab, test_actor_id, balance_ledger, tab_service):
        tab_service.add_line_item(
            hotel_tab["tab"].id, "Wine glass", "8.50", test_actor_id,
            quantity=3, billing_group_id=hotel_tab["restaurant"].id,
        )
        assert balance_ledger.recompute_balance(hotel_tab["restaurant"].id) == Decimal("25.50")

    def test_repairs_drift(self, session, hotel_tab, add_item, assignment_service, balance_ledger, billing_selector):
        assignment_service.assign_automatic(add_item(hotel_tab["tab"].id, "25.00", category="food").id)
        group_id = hotel_tab["restaurant"].id

        session.get(BillingGroup, group_id).current_balance = Decimal("999.00")
        session.flush()
        assert not billing_selector.check_reconciliation(group_id).reconciled

        assert balance_ledger.recompute_balance(group_id) == Decimal("25.00")
        check = billing_selector.check_reconciliation(group_id)
        assert check.reconciled
        assert check.drift == Decimal("0")

    def test_includes_invoice_line_charges(
        self, create_tab, create_group, tab_service, balance_ledger, test_actor_id,
    ):
        tab = create_tab()
        group = create_group(tab.id, "Corporate")
        invoice = tab_service.create_invoice("INV-1001", test_actor_id, tab_id=tab.id)
        tab_service.add_line_item(tab.id, "Coffee", "4.00", test_actor_id, billing_group_id=group.id)
        # 2 * 50 * 1.10 * 0.80 = 88.00
        tab_service.add_invoice_line_item(
            invoice.id, "Conference room", "50", test_actor_id,
            quantity=2, tax_rate="10", discount_percentage="20", billing_group_id=group.id,
        )

        assert balance_ledger.recompute_balance(group.id) == Decimal("92.00")

    def test_rounds_once_on_the_aggregate(
        self, create_tab, create_group, tab_service, balance_ledger, test_actor_id,
    ):
        tab = create_tab()
        group = create_group(tab.id, "Rounding")
        for _ in range(3):
            tab_service.add_line_item(
                tab.id, "Third", "0.003333", test_actor_id, billing_group_id=group.id,
            )
        assert balance_ledger.recompute_balance(group.id) == Decimal("0.01")

    def test_unknown_group(self, balance_ledger):
        with pytest.raises(BillingGroupNotFoundError):
            balance_ledger.recompute_balance(uuid4())

    def test_recompute_many_skips_none_and_duplicates(
        self, hotel_tab, add_item, assignment_service, balance_ledger,
    ):
        assignment_service.assign_automatic(add_item(hotel_tab["tab"].id, "5", category="food").id)
        room, restaurant = hotel_tab["room"].id, hotel_tab["restaurant"].id

        balances = balance_ledger.recompute_many([None, restaurant, room, restaurant])

        assert balances == {room: Decimal("0.00"), restaurant: Decimal("5.00")}

    def test_recompute_is_logged(self, create_tab, create_group, balance_ledger, captured_logs):
        group = create_group(create_tab().id, "Logged")
        balance_ledger.recompute_balance(group.id)

        records = [r for r in captured_logs() if r["message"] == "balance_recomputed"]
        assert records and records[-1]["billing_group_id"] == str(group.id)
        assert records[-1]["current_balance"] == "0.00"


class TestApplyDeposit:
    @pytest.fixture
    def deposit_group(self, create_tab, create_group):
        return create_group(create_tab().id, "Event Deposit", group_type="deposit", deposit_amount="100.00")

    def test_partial_application(self, deposit_group, balance_ledger):
        result = balance_ledger.apply_deposit(deposit_group.id, "30.00")

        assert result.requested == Decimal("30.00")
        assert result.applied == Decimal("30.00")
        assert result.deposit_applied == Decimal("30.00")
        assert result.remaining == Decimal("70.00")
        assert not result.clamped

    def test_applications_accumulate(self, deposit_group, balance_ledger):
        balance_ledger.apply_deposit(deposit_group.id, "30.00")
        result = balance_ledger.apply_deposit(deposit_group.id, "45.50")

        assert result.deposit_applied == Decimal("75.50")
        assert result.remaining == Decimal("24.50")

    def test_over_request_is_clamped_to_remaining(self, deposit_group, balance_ledger, captured_logs):
        balance_ledger.apply_deposit(deposit_group.id, "80.00")

        result = balance_ledger.apply_deposit(deposit_group.id, "50.00")

        assert result.applied == Decimal("20.00")
        assert result.clamped
        assert result.deposit_applied == result.deposit_amount
        assert result.remaining == Decimal("0")
        assert any(r["message"] == "deposit_clamped" for r in captured_logs())

    def test_exhausted_deposit_raises(self, deposit_group, balance_ledger):
        balance_ledger.apply_deposit(deposit_group.id, "100.00")

        with pytest.raises(DepositExhaustedError) as exc_info:
            balance_ledger.apply_deposit(deposit_group.id, "0.01")

        assert exc_info.value.code == "DEPOSIT_EXHAUSTED"
        assert exc_info.value.deposit_applied == Decimal("100.00")

    @pytest.mark.parametrize("amount", ["0", "-5.00", 0])
    def test_non_positive_amount_rejected(self, deposit_group, balance_ledger, amount):
        with pytest.raises(InvalidDepositAmountError):
            balance_ledger.apply_deposit(deposit_group.id, amount)

    @pytest.mark.parametrize("amount", ["NaN", "Infinity", "-Infinity", "sNaN", "ten"])
    def test_non_numeric_amount_rejected(self, deposit_group, balance_ledger, billing_selector, amount):
        with pytest.raises(InvalidDepositAmountError) as exc_info:
            balance_ledger.apply_deposit(deposit_group.id, amount)

        assert exc_info.value.code == "INVALID_DEPOSIT_AMOUNT"
        assert billing_selector.get_group(deposit_group.id).deposit_applied == Decimal("0")

    def test_group_without_deposit(self, create_tab, create_group, balance_ledger):
        group = create_group(create_tab().id, "No Deposit")
        with pytest.raises(NoDepositConfiguredError):
            balance_ledger.apply_deposit(group.id, "10.00")

    def test_unknown_group(self, balance_ledger):
        with pytest.raises(BillingGroupNotFoundError):
            balance_ledger.apply_deposit(uuid4(), "10.00")

    def test_float_amount_rejected(self, deposit_group, balance_ledger):
        with pytest.raises(TypeError):
            balance_ledger.apply_deposit(deposit_group.id, 10.5)

    def test_deposit_does_not_change_balance(self, deposit_group, balance_ledger, billing_selector):
        balance_ledger.apply_deposit(deposit_group.id, "40.00")
        group = billing_selector.get_group(deposit_group.id)
        assert group.current_balance == Decimal("0")
        assert group.deposit_remaining == Decimal("60.00")


class TestCreditLimit:
    def test_credit_available_tracks_balance(
        self, create_tab, create_group, tab_service, balance_ledger, test_actor_id,
    ):
        tab = create_tab()
        group = create_group(tab.id, "Company Card", group_type="credit", credit_limit="100.00")
        tab_service.add_line_item(tab.id, "Dinner", "60.00", test_actor_id, billing_group_id=group.id)

        assert balance_ledger.credit_available(group.id) == Decimal("40.00")
        assert not balance_ledger.is_over_credit_limit(group.id)

    def test_over_limit_is_reported_not_refused(
        self, create_tab, create_group, tab_service, balance_ledger, test_actor_id,
    ):
        tab = create_tab()
        group = create_group(tab.id, "Company Card", group_type="credit", credit_limit="50.00")
        tab_service.add_line_item(tab.id, "Dinner", "80.00", test_actor_id, billing_group_id=group.id)

        assert balance_ledger.credit_available(group.id) == Decimal("-30.00")
        assert balance_ledger.is_over_credit_limit(group.id)

    def test_no_limit(self, create_tab, create_group, balance_ledger):
        group = create_group(create_tab().id, "Unlimited")
        assert balance_ledger.credit_available(group.id) is None
        assert not balance_ledger.is_over_credit_limit(group.id)
