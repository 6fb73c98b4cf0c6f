"""
Structured logging of billing operations.

Covers the event payloads the services emit (assignment, overrides,
deposits, closing groups), the LogContext fields each service binds while
it works, and the JSON shape of kernel exceptions.
"""

import json
import logging
from decimal import Decimal
from io import StringIO

import pytest

from billing_kernel.exceptions import CrossTabAssignmentError, DepositExhaustedError
from billing_kernel.logging_config import (
    LogContext,
    StructuredFormatter,
    configure_logging,
    get_logger,
    reset_logging,
)


def _messages(records, message):
    return [r for r in records if r["message"] == message]


@pytest.fixture
def fresh_logging():
    """Unconfigured logging, restored to the suite configuration afterwards."""
    reset_logging()
    yield
    reset_logging()
    configure_logging(level=logging.DEBUG, stream=StringIO())


@pytest.fixture
def json_stream(fresh_logging):
    stream = StringIO()
    handler = logging.StreamHandler(stream)
    configure_logging(handler=handler)

    def _records() -> list[dict]:
        return [json.loads(line) for line in stream.getvalue().splitlines() if line]

    return _records


class TestAssignmentEvents:
    def test_automatic_assignment_payload(self, hotel_tab, add_item, assignment_service, captured_logs):
        tab = hotel_tab["tab"]
        dinner = add_item(tab.id, "42.00", category="food")

        assignment_service.assign_automatic(dinner.id)

        (record,) = _messages(captured_logs(), "line_item_assigned")
        assert record["level"] == "INFO"
        assert record["logger"] == "billing_kernel.services.assignment"
        assert record["tab_id"] == str(tab.id)
        assert record["line_item_id"] == str(dinner.id)
        assert record["mode"] == "automatic"
        assert record["assigned_group_id"] == str(hotel_tab["restaurant"].id)
        assert record["rule_id"] == str(hotel_tab["food_rule"].rule_id)
        assert record["previous_group_id"] is None
        assert record["via_fallback"] is False

    def test_fallback_is_flagged(self, hotel_tab, add_item, assignment_service, captured_logs):
        spa = add_item(hotel_tab["tab"].id, "90.00", category="spa")

        assignment_service.assign_automatic(spa.id)

        (record,) = _messages(captured_logs(), "line_item_assigned")
        assert record["assigned_group_id"] == str(hotel_tab["room"].id)
        assert record["rule_id"] is None
        assert record["via_fallback"] is True

    def test_balance_recompute_inherits_item_context(
        self, hotel_tab, add_item, assignment_service, captured_logs,
    ):
        dinner = add_item(hotel_tab["tab"].id, "42.00", category="food")

        assignment_service.assign_automatic(dinner.id)

        recomputed = _messages(captured_logs(), "balance_recomputed")
        assert recomputed
        assert all(r["line_item_id"] == str(dinner.id) for r in recomputed)
        assert recomputed[-1]["current_balance"] == "42.00"

    def test_override_payload(self, hotel_tab, add_item, assignment_service, test_actor_id, captured_logs):
        dinner = add_item(hotel_tab["tab"].id, "42.00", category="food")
        assignment_service.assign_automatic(dinner.id)

        result = assignment_service.assign_manual(
            dinner.id, hotel_tab["room"].id, test_actor_id, reason="guest request",
        )

        (record,) = _messages(captured_logs(), "override_recorded")
        assert record["override_id"] == str(result.override_id)
        assert record["actor_id"] == str(test_actor_id)
        assert record["mode"] == "manual"
        assert record["original_group_id"] == str(hotel_tab["restaurant"].id)
        assert record["assigned_group_id"] == str(hotel_tab["room"].id)
        assert record["reason"] == "guest request"

    def test_bulk_logs_one_override_per_pair(
        self, hotel_tab, add_item, assignment_service, test_actor_id, captured_logs,
    ):
        tab_id, room = hotel_tab["tab"].id, hotel_tab["room"].id
        items = [add_item(tab_id, "5.00") for _ in range(3)]

        assignment_service.bulk_assign([(i.id, room) for i in items], test_actor_id)

        records = captured_logs()
        overrides = _messages(records, "override_recorded")
        assert [r["line_item_id"] for r in overrides] == [str(i.id) for i in items]
        assert all(r["actor_id"] == str(test_actor_id) for r in overrides)
        (summary,) = _messages(records, "bulk_assignment_completed")
        assert summary["assignment_count"] == 3

    def test_context_released_after_call(self, hotel_tab, add_item, assignment_service):
        dinner = add_item(hotel_tab["tab"].id, "42.00", category="food")

        assignment_service.assign_automatic(dinner.id)

        assert LogContext.get_all() == {}


class TestDepositEvents:
    def test_clamped_draw_warns(self, create_tab, create_group, balance_ledger, captured_logs):
        group = create_group(create_tab().id, "Deposit", deposit_amount="50.00")

        balance_ledger.apply_deposit(group.id, "80.00")

        records = captured_logs()
        (clamped,) = _messages(records, "deposit_clamped")
        assert clamped["level"] == "WARNING"
        assert clamped["billing_group_id"] == str(group.id)
        assert Decimal(clamped["requested"]) == Decimal("80.00")
        assert Decimal(clamped["applied"]) == Decimal("50.00")
        (applied,) = _messages(records, "deposit_applied")
        assert Decimal(applied["deposit_remaining"]) == Decimal("0")

    def test_full_draw_does_not_warn(self, create_tab, create_group, balance_ledger, captured_logs):
        group = create_group(create_tab().id, "Deposit", deposit_amount="50.00")

        balance_ledger.apply_deposit(group.id, "20.00")

        records = captured_logs()
        assert _messages(records, "deposit_clamped") == []
        (applied,) = _messages(records, "deposit_applied")
        assert Decimal(applied["deposit_remaining"]) == Decimal("30.00")

    def test_exhausted_deposit_warns(self, create_tab, create_group, balance_ledger, captured_logs):
        group = create_group(create_tab().id, "Deposit", deposit_amount="10.00")
        balance_ledger.apply_deposit(group.id, "10.00")

        with pytest.raises(DepositExhaustedError):
            balance_ledger.apply_deposit(group.id, "1.00")

        (record,) = _messages(captured_logs(), "deposit_exhausted")
        assert record["level"] == "WARNING"
        assert Decimal(record["deposit_applied"]) == Decimal("10.00")


class TestGroupEvents:
    def test_close_binds_group_and_actor(
        self, hotel_tab, add_item, assignment_service, billing_group_service,
        test_actor_id, captured_logs,
    ):
        restaurant = hotel_tab["restaurant"].id
        assignment_service.assign_automatic(add_item(hotel_tab["tab"].id, "9.00", category="food").id)

        billing_group_service.close_group(restaurant, test_actor_id, reassign_to=hotel_tab["room"].id)

        (record,) = _messages(captured_logs(), "billing_group_closed")
        assert record["billing_group_id"] == str(restaurant)
        assert record["actor_id"] == str(test_actor_id)
        assert record["reassigned_to"] == str(hotel_tab["room"].id)
        assert record["items_moved"] == 1
        assert record["invoice_lines_moved"] == 0


class TestKernelExceptionsInLogs:
    def test_cross_tab_error_fields(self, json_stream):
        try:
            raise CrossTabAssignmentError("item-1", "group-9", "tab-a", "tab-b")
        except CrossTabAssignmentError:
            get_logger("services.assignment").error("assignment_failed", exc_info=True)

        (record,) = json_stream()
        assert record["exc_code"] == "CROSS_TAB_ASSIGNMENT"
        assert record["exc_item_tab_id"] == "tab-a"
        assert record["exc_group_tab_id"] == "tab-b"
        assert "traceback" in record

    def test_deposit_error_decimals_serialised(self, json_stream):
        try:
            raise DepositExhaustedError("group-1", Decimal("100.00"), Decimal("100.00"))
        except DepositExhaustedError:
            get_logger("services.balance_ledger").warning("deposit_failed", exc_info=True)

        (record,) = json_stream()
        assert record["exc_code"] == "DEPOSIT_EXHAUSTED"
        assert record["exc_deposit_applied"] == "100.00"

    def test_bound_tab_context_on_error_line(self, json_stream):
        with LogContext.bind(tab_id="tab-7", not_a_field="ignored"):
            get_logger("services.tab").error("tab_failed")

        (record,) = json_stream()
        assert record["tab_id"] == "tab-7"
        assert "not_a_field" not in record


class TestConfigureLogging:
    def test_second_configuration_is_ignored(self, fresh_logging):
        first = logging.StreamHandler(StringIO())
        second = logging.StreamHandler(StringIO())

        configure_logging(handler=first)
        configure_logging(handler=second)

        root = logging.getLogger("billing_kernel")
        assert first in root.handlers
        assert second not in root.handlers
        assert isinstance(first.formatter, StructuredFormatter)

    def test_string_level(self, fresh_logging):
        stream = StringIO()
        configure_logging(handler=logging.StreamHandler(stream), level="warning")

        get_logger("services.assignment").info("dropped")
        get_logger("services.assignment").warning("kept")

        assert [json.loads(line)["message"] for line in stream.getvalue().splitlines()] == ["kept"]
