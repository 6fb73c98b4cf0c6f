"""
BillingGroupService -- lifecycle of billing groups and their rules.

Responsibility:
    Creates billing groups (one at a time, from a named template, or as the
    customer's personal default), edits and closes them, deletes unused
    ones, and manages the prioritized rules each group owns.

Architecture position:
    Kernel > Services -- imperative shell.
    Uses SequenceService for group numbers and rule creation order,
    AssignmentService to move items out of a closing group, and
    BalanceLedger to keep balances reconciled.

Invariants enforced:
    - A group belongs to exactly one tab or one invoice.
    - A group names at most one payer identity.
    - Credit limits and deposits are non-negative; a deposit never drops
      below what has already been applied.
    - Rule input is fully validated before anything is added to the session.
    - Groups referenced by items or overrides are closed, never deleted.

Failure modes:
    - BillingGroupParentError, PayerIdentityError,
      BillingGroupValidationError, RuleValidationError: bad input.
    - TabNotFoundError, InvoiceNotFoundError, BillingGroupNotFoundError,
      RuleNotFoundError: unknown ids.
    - BillingGroupsAlreadyEnabledError, UnknownTemplateError: template
      enablement.
    - BillingGroupClosedError: rule creation on a closed group.
    - BillingGroupReferencedError: hard delete of a referenced group.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Any, Iterable, Mapping
from uuid import UUID

from sqlalchemy import func, or_, select, update
from sqlalchemy.orm import Session

from billing_config import (
    BillingSettings,
    TemplateCatalogue,
    TemplateGroup,
    get_settings,
    get_templates,
)
from billing_kernel.domain.assignment_policy import select_default_group
from billing_kernel.domain.clock import Clock, SystemClock
from billing_kernel.domain.dtos import GroupInfo, GroupSnapshot, GroupType, RuleSpec
from billing_kernel.domain.money import to_decimal
from billing_kernel.domain.rules import (
    RuleConditions,
    parse_action,
    validate_conditions,
    validate_priority,
)
from billing_kernel.exceptions import (
    BillingGroupClosedError,
    BillingGroupNotFoundError,
    BillingGroupParentError,
    BillingGroupReferencedError,
    BillingGroupsAlreadyEnabledError,
    BillingGroupValidationError,
    InvoiceNotFoundError,
    PayerIdentityError,
    RuleNotFoundError,
    RuleValidationError,
    TabNotFoundError,
    UnknownTemplateError,
)
from billing_kernel.logging_config import LogContext, get_logger
from billing_kernel.models.billing_group import (
    BillingGroup,
    BillingGroupOverride,
    BillingGroupRule,
    BillingGroupStatus,
)
from billing_kernel.models.tab import Invoice, InvoiceLineItem, LineItem, Tab
from billing_kernel.services.assignment_service import AssignmentService
from billing_kernel.services.balance_ledger import BalanceLedger
from billing_kernel.services.base import BaseService
from billing_kernel.services.sequence_service import SequenceService

logger = get_logger("services.billing_group")

CLOSE_REASSIGN_REASON = "billing group closed"

_UPDATABLE_FIELDS = frozenset({
    "name",
    "group_type",
    "payer_email",
    "payer_organization_id",
    "credit_limit",
    "deposit_amount",
    "authorization_code",
    "po_number",
    "metadata",
})


def _non_negative(field: str, value: Any) -> Decimal | None:
    if value is None:
        return None
    try:
        amount = to_decimal(value, field)
    except (TypeError, ValueError) as exc:
        raise BillingGroupValidationError(field, str(exc)) from exc
    if amount < 0:
        raise BillingGroupValidationError(field, "must not be negative")
    return amount


class BillingGroupService(BaseService[BillingGroup]):
    """
    Billing group and rule management.

    Non-goals:
        - Does NOT commit.
        - Does NOT evaluate rules; see AssignmentService.
    """

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        settings: BillingSettings | None = None,
        templates: TemplateCatalogue | None = None,
    ):
        super().__init__(session)
        self._clock = clock or SystemClock()
        self._settings = settings or get_settings()
        self._templates = templates
        self._sequences = SequenceService(session)
        self._ledger = BalanceLedger(session, money_quantum=self._settings.money_quantum)

    @property
    def templates(self) -> TemplateCatalogue:
        if self._templates is None:
            self._templates = get_templates()
        return self._templates

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def _get_tab(self, tab_id: UUID) -> Tab:
        tab = self.session.get(Tab, tab_id)
        if tab is None:
            raise TabNotFoundError(str(tab_id))
        return tab

    def _get_group(self, group_id: UUID) -> BillingGroup:
        group = self.session.get(BillingGroup, group_id)
        if group is None:
            raise BillingGroupNotFoundError(str(group_id))
        return group

    def _get_rule(self, rule_id: UUID) -> BillingGroupRule:
        rule = self.session.get(BillingGroupRule, rule_id)
        if rule is None:
            raise RuleNotFoundError(str(rule_id))
        return rule

    def _tab_groups(self, tab_id: UUID) -> list[BillingGroup]:
        return list(
            self.session.execute(
                select(BillingGroup)
                .where(BillingGroup.tab_id == tab_id)
                .order_by(BillingGroup.sequence)
            ).scalars().all()
        )

    # ------------------------------------------------------------------
    # Groups
    # ------------------------------------------------------------------

    def create_group(
        self,
        name: str,
        actor_id: UUID,
        tab_id: UUID | None = None,
        invoice_id: UUID | None = None,
        group_type: str = GroupType.STANDARD.value,
        payer_email: str | None = None,
        payer_organization_id: UUID | None = None,
        credit_limit: Decimal | int | str | None = None,
        deposit_amount: Decimal | int | str | None = None,
        authorization_code: str | None = None,
        po_number: str | None = None,
        metadata: Mapping[str, Any] | None = None,
    ) -> GroupInfo:
        """
        Create one billing group on a tab or an invoice.

        Returns:
            GroupInfo of the new group, numbered ``<prefix>-000001`` onward.
        """
        if (tab_id is None) == (invoice_id is None):
            raise BillingGroupParentError(
                str(tab_id) if tab_id else None,
                str(invoice_id) if invoice_id else None,
            )
        if payer_email and payer_organization_id:
            raise PayerIdentityError(payer_email, str(payer_organization_id))
        if not name or not name.strip():
            raise BillingGroupValidationError("name", "must not be blank")
        if not group_type or not group_type.strip():
            raise BillingGroupValidationError("group_type", "must not be blank")
        limit = _non_negative("credit_limit", credit_limit)
        deposit = _non_negative("deposit_amount", deposit_amount)

        if tab_id is not None:
            self._get_tab(tab_id)
        elif self.session.get(Invoice, invoice_id) is None:
            raise InvoiceNotFoundError(str(invoice_id))

        seq = self._sequences.next_value(SequenceService.BILLING_GROUP)
        group = BillingGroup(
            tab_id=tab_id,
            invoice_id=invoice_id,
            group_number=f"{self._settings.group_number_prefix}-{seq:06d}",
            sequence=seq,
            name=name.strip(),
            group_type=group_type.strip(),
            status=BillingGroupStatus.ACTIVE.value,
            payer_email=payer_email,
            payer_organization_id=payer_organization_id,
            credit_limit=limit,
            deposit_amount=deposit,
            deposit_applied=Decimal("0"),
            current_balance=Decimal("0"),
            authorization_code=authorization_code,
            po_number=po_number,
            group_metadata=dict(metadata) if metadata else None,
            created_by_id=actor_id,
        )
        self.session.add(group)
        self.session.flush()

        logger.info(
            "billing_group_created",
            extra={
                "billing_group_id": str(group.id),
                "group_number": group.group_number,
                "group_type": group.group_type,
                "parent_tab_id": str(tab_id) if tab_id else None,
                "parent_invoice_id": str(invoice_id) if invoice_id else None,
            },
        )
        return GroupInfo.from_model(group)

    def update_group(self, group_id: UUID, actor_id: UUID, **changes: Any) -> GroupInfo:
        """
        Edit mutable group attributes.

        Accepted keys: name, group_type, payer_email, payer_organization_id,
        credit_limit, deposit_amount, authorization_code, po_number,
        metadata.  Passing None clears an optional attribute.
        """
        unknown = sorted(set(changes) - _UPDATABLE_FIELDS)
        if unknown:
            raise BillingGroupValidationError("changes", f"cannot update {unknown}")

        group = self._get_group(group_id)

        if "name" in changes and (not changes["name"] or not str(changes["name"]).strip()):
            raise BillingGroupValidationError("name", "must not be blank")
        if "group_type" in changes and (
            not changes["group_type"] or not str(changes["group_type"]).strip()
        ):
            raise BillingGroupValidationError("group_type", "must not be blank")

        email = changes.get("payer_email", group.payer_email)
        org = changes.get("payer_organization_id", group.payer_organization_id)
        if email and org:
            raise PayerIdentityError(email, str(org))

        if "credit_limit" in changes:
            changes["credit_limit"] = _non_negative("credit_limit", changes["credit_limit"])
        if "deposit_amount" in changes:
            deposit = _non_negative("deposit_amount", changes["deposit_amount"])
            applied = group.deposit_applied or Decimal("0")
            if deposit is None and applied > 0:
                raise BillingGroupValidationError(
                    "deposit_amount", f"cannot remove a deposit with {applied} applied"
                )
            if deposit is not None and deposit < applied:
                raise BillingGroupValidationError(
                    "deposit_amount", f"{deposit} is below the {applied} already applied"
                )
            changes["deposit_amount"] = deposit

        for key, value in changes.items():
            if key == "metadata":
                group.group_metadata = dict(value) if value else None
            elif key in ("name", "group_type"):
                setattr(group, key, str(value).strip())
            else:
                setattr(group, key, value)
        group.updated_by_id = actor_id
        self.session.flush()

        logger.info(
            "billing_group_updated",
            extra={"billing_group_id": str(group.id), "fields": sorted(changes)},
        )
        return GroupInfo.from_model(group)

    def enable_billing_groups(
        self,
        tab_id: UUID,
        actor_id: UUID,
        template: str | None = None,
        custom_groups: Iterable[Mapping[str, Any] | str] | None = None,
    ) -> list[GroupInfo]:
        """
        Create a starter set of groups on a tab that has none.

        ``custom_groups`` (names, or mappings with ``name`` and optional
        ``type``) replaces the template.  Otherwise the named template is
        used, or the catalogue default (a single "General" group).

        Raises:
            BillingGroupsAlreadyEnabledError: the tab already has groups.
            UnknownTemplateError: template name not in the catalogue.
        """
        self._get_tab(tab_id)

        with LogContext.bind(tab_id=tab_id, actor_id=actor_id):
            existing = len(self._tab_groups(tab_id))
            if existing:
                raise BillingGroupsAlreadyEnabledError(str(tab_id), existing)

            if custom_groups is not None:
                specs = [self._parse_custom_group(g) for g in custom_groups]
                if not specs:
                    raise BillingGroupValidationError("custom_groups", "must not be empty")
                source = "custom"
            else:
                name = template or self.templates.default_template
                chosen = self.templates.templates.get(name)
                if chosen is None:
                    raise UnknownTemplateError(name, self.templates.names())
                specs = list(chosen.groups)
                source = chosen.name

            created = [
                self.create_group(
                    name=spec.name,
                    actor_id=actor_id,
                    tab_id=tab_id,
                    group_type=spec.group_type,
                )
                for spec in specs
            ]

            logger.info(
                "billing_groups_enabled",
                extra={"template": source, "group_count": len(created)},
            )
            return created

    @staticmethod
    def _parse_custom_group(raw: Mapping[str, Any] | str) -> TemplateGroup:
        if isinstance(raw, str):
            return TemplateGroup(name=raw)
        if not isinstance(raw, Mapping) or not raw.get("name"):
            raise BillingGroupValidationError("custom_groups", f"invalid group {raw!r}")
        return TemplateGroup(
            name=str(raw["name"]),
            group_type=str(raw.get("type", raw.get("group_type", GroupType.STANDARD.value))),
        )

    def create_default_groups(self, tab_id: UUID, actor_id: UUID) -> list[GroupInfo]:
        """
        Create the customer's personal group on a tab.

        No-op (empty list) when the tab has no customer identity or already
        has a personal group.
        """
        tab = self._get_tab(tab_id)
        label = tab.customer_name or tab.customer_email
        if not label:
            return []
        if any(g.group_type == GroupType.PERSONAL.value for g in self._tab_groups(tab_id)):
            return []

        return [
            self.create_group(
                name=label,
                actor_id=actor_id,
                tab_id=tab_id,
                group_type=GroupType.PERSONAL.value,
                payer_email=tab.customer_email,
                metadata={"isDefault": True},
            )
        ]

    def get_or_create_default_group(self, tab_id: UUID, actor_id: UUID) -> GroupInfo:
        """
        The group automatic assignment falls back to, created if the tab
        has no active group.
        """
        tab = self._get_tab(tab_id)
        active = [g for g in self._tab_groups(tab_id) if g.is_active]
        if active:
            chosen = select_default_group([GroupSnapshot.from_model(g) for g in active], tab_id)
            return GroupInfo.from_model(self._get_group(chosen.group_id))

        created = self.create_default_groups(tab_id, actor_id)
        if created:
            return created[0]
        return self.create_group(name="General", actor_id=actor_id, tab_id=tab.id)

    def close_group(
        self,
        group_id: UUID,
        actor_id: UUID,
        reassign_to: UUID | None = None,
    ) -> GroupInfo:
        """
        Soft-close a group and deactivate its rules.

        With ``reassign_to``, every line item in the group is first moved to
        that group as an audited manual placement, and every invoice line
        billed to it follows.  Both balances are recomputed.  Closing an
        already closed group is a no-op.
        """
        group = self._get_group(group_id)

        with LogContext.bind(billing_group_id=group.id, actor_id=actor_id):
            if not group.is_active:
                return GroupInfo.from_model(group)

            moved = invoice_lines_moved = 0
            if reassign_to is not None:
                if reassign_to == group.id:
                    raise BillingGroupValidationError(
                        "reassign_to", "cannot reassign items to the group being closed"
                    )
                target = self._get_group(reassign_to)
                if target.tab_id != group.tab_id or target.invoice_id != group.invoice_id:
                    raise BillingGroupValidationError(
                        "reassign_to", "target group belongs to a different tab or invoice"
                    )
                if not target.is_active:
                    raise BillingGroupClosedError(str(target.id))
                item_ids = self.session.execute(
                    select(LineItem.id)
                    .where(LineItem.billing_group_id == group.id)
                    .order_by(LineItem.line_number)
                ).scalars().all()
                assigner = AssignmentService(self.session, self._clock, self._settings)
                assigner.bulk_assign(
                    [(item_id, reassign_to) for item_id in item_ids],
                    actor_id=actor_id,
                    reason=CLOSE_REASSIGN_REASON,
                )
                moved = len(item_ids)

                # Invoice lines carry no override trail; the pointer moves directly.
                invoice_lines = self.session.execute(
                    select(InvoiceLineItem)
                    .where(InvoiceLineItem.billing_group_id == group.id)
                    .order_by(InvoiceLineItem.invoice_id, InvoiceLineItem.line_number)
                ).scalars().all()
                for line in invoice_lines:
                    line.billing_group_id = reassign_to
                    line.updated_by_id = actor_id
                invoice_lines_moved = len(invoice_lines)

            for rule in group.rules:
                rule.is_active = False
                rule.updated_by_id = actor_id
            group.status = BillingGroupStatus.CLOSED.value
            group.updated_by_id = actor_id
            self.session.flush()
            self._ledger.recompute_many([group.id, reassign_to])

            logger.info(
                "billing_group_closed",
                extra={
                    "reassigned_to": str(reassign_to) if reassign_to else None,
                    "items_moved": moved,
                    "invoice_lines_moved": invoice_lines_moved,
                },
            )
            return GroupInfo.from_model(group)

    def delete_group(self, group_id: UUID) -> None:
        """
        Hard-delete a group and its rules.

        Raises:
            BillingGroupReferencedError: any line item, invoice line item or
                override references the group.  Close it instead.
        """
        group = self._get_group(group_id)

        items = self.session.execute(
            select(func.count()).select_from(LineItem)
            .where(LineItem.billing_group_id == group_id)
        ).scalar_one()
        invoice_items = self.session.execute(
            select(func.count()).select_from(InvoiceLineItem)
            .where(InvoiceLineItem.billing_group_id == group_id)
        ).scalar_one()
        overrides = self.session.execute(
            select(func.count()).select_from(BillingGroupOverride)
            .where(
                or_(
                    BillingGroupOverride.original_group_id == group_id,
                    BillingGroupOverride.assigned_group_id == group_id,
                )
            )
        ).scalar_one()

        if items or invoice_items or overrides:
            raise BillingGroupReferencedError(str(group_id), items + invoice_items, overrides)

        rule_ids = [r.id for r in group.rules]
        if rule_ids:
            self.session.execute(
                update(LineItem)
                .where(LineItem.assigned_rule_id.in_(rule_ids))
                .values(assigned_rule_id=None)
            )
        self.session.delete(group)
        self.session.flush()

        logger.info(
            "billing_group_deleted",
            extra={"billing_group_id": str(group_id), "rules_deleted": len(rule_ids)},
        )

    # ------------------------------------------------------------------
    # Rules
    # ------------------------------------------------------------------

    def _validated_rule_input(
        self,
        name: str | None,
        conditions: Mapping[str, Any] | RuleConditions | None,
        priority: int | None,
        action: Any,
    ) -> tuple[str | None, RuleConditions | None, int | None, str | None]:
        if name is not None and not name.strip():
            raise RuleValidationError("name", "must not be blank")
        parsed = validate_conditions(conditions) if conditions is not None else None
        checked_priority = (
            validate_priority(
                priority,
                self._settings.min_rule_priority,
                self._settings.max_rule_priority,
            )
            if priority is not None
            else None
        )
        parsed_action = parse_action(action).value if action is not None else None
        return (name.strip() if name else None), parsed, checked_priority, parsed_action

    def create_rule(
        self,
        billing_group_id: UUID,
        name: str,
        conditions: Mapping[str, Any] | RuleConditions | None,
        actor_id: UUID,
        priority: int | None = None,
        action: str = "auto_assign",
        metadata: Mapping[str, Any] | None = None,
        is_active: bool = True,
    ) -> RuleSpec:
        """
        Add a rule to a group.  Priority defaults to the configured default
        (100); lower values are evaluated first.

        Raises:
            RuleValidationError: malformed name, conditions, priority or
                action.  Raised before anything touches the session.
            BillingGroupNotFoundError, BillingGroupClosedError.
        """
        if name is None:
            raise RuleValidationError("name", "is required")
        if priority is None:
            priority = self._settings.default_rule_priority
        clean_name, parsed, checked_priority, parsed_action = self._validated_rule_input(
            name, conditions if conditions is not None else {}, priority, action,
        )

        group = self._get_group(billing_group_id)
        if not group.is_active:
            raise BillingGroupClosedError(str(group.id))

        seq = self._sequences.next_value(SequenceService.BILLING_GROUP_RULE)
        rule = BillingGroupRule(
            billing_group_id=group.id,
            name=clean_name,
            priority=checked_priority,
            sequence=seq,
            conditions=parsed.to_dict(),
            action=parsed_action,
            is_active=is_active,
            rule_metadata=dict(metadata) if metadata else None,
            created_by_id=actor_id,
        )
        self.session.add(rule)
        self.session.flush()

        logger.info(
            "rule_created",
            extra={
                "billing_group_id": str(group.id),
                "rule_id": str(rule.id),
                "priority": rule.priority,
                "action": rule.action,
            },
        )
        return RuleSpec.from_model(rule)

    def update_rule(
        self,
        rule_id: UUID,
        actor_id: UUID,
        name: str | None = None,
        conditions: Mapping[str, Any] | RuleConditions | None = None,
        priority: int | None = None,
        action: str | None = None,
        is_active: bool | None = None,
        metadata: Mapping[str, Any] | None = None,
    ) -> RuleSpec:
        """Change the given attributes of a rule; None leaves one unchanged."""
        clean_name, parsed, checked_priority, parsed_action = self._validated_rule_input(
            name, conditions, priority, action,
        )
        rule = self._get_rule(rule_id)

        if clean_name is not None:
            rule.name = clean_name
        if parsed is not None:
            rule.conditions = parsed.to_dict()
        if checked_priority is not None:
            rule.priority = checked_priority
        if parsed_action is not None:
            rule.action = parsed_action
        if is_active is not None:
            rule.is_active = is_active
        if metadata is not None:
            rule.rule_metadata = dict(metadata)
        rule.updated_by_id = actor_id
        self.session.flush()

        logger.info("rule_updated", extra={"rule_id": str(rule.id)})
        return RuleSpec.from_model(rule)

    def deactivate_rule(self, rule_id: UUID, actor_id: UUID) -> RuleSpec:
        rule = self._get_rule(rule_id)
        rule.is_active = False
        rule.updated_by_id = actor_id
        self.session.flush()
        logger.info("rule_deactivated", extra={"rule_id": str(rule.id)})
        return RuleSpec.from_model(rule)

    def delete_rule(self, rule_id: UUID) -> None:
        """
        Delete a rule.  Items it placed keep their group; their
        assigned_rule_id is cleared.  Overrides keep the historical id.
        """
        rule = self._get_rule(rule_id)
        self.session.execute(
            update(LineItem)
            .where(LineItem.assigned_rule_id == rule.id)
            .values(assigned_rule_id=None)
        )
        self.session.delete(rule)
        self.session.flush()
        logger.info("rule_deleted", extra={"rule_id": str(rule_id)})
