"""
SequenceService: locked counter rows for group numbers and rule order.
"""

from billing_kernel.services.sequence_service import SequenceCounter, SequenceService


class TestSequenceService:
    def test_first_value_is_one(self, session):
        sequences = SequenceService(session)
        assert sequences.current_value("fresh") is None
        assert sequences.next_value("fresh") == 1
        assert sequences.current_value("fresh") == 1

    def test_strictly_increasing(self, session):
        sequences = SequenceService(session)
        values = [sequences.next_value("counter") for _ in range(5)]
        assert values == [1, 2, 3, 4, 5]

    def test_names_are_independent(self, session):
        sequences = SequenceService(session)
        sequences.next_value("a")
        sequences.next_value("a")
        assert sequences.next_value("b") == 1

    def test_initialize_sequences_is_idempotent(self, session):
        sequences = SequenceService(session)
        sequences.initialize_sequences()
        sequences.initialize_sequences()

        rows = session.query(SequenceCounter).filter(
            SequenceCounter.name.in_(
                [SequenceService.BILLING_GROUP, SequenceService.BILLING_GROUP_RULE]
            )
        ).all()
        assert len(rows) == 2
        assert sequences.next_value(SequenceService.BILLING_GROUP) == 1

    def test_group_and_rule_sequences_used_by_creation(
        self, session, create_tab, create_group, create_rule,
    ):
        group = create_group(create_tab().id, "G")
        rule = create_rule(group.id, {})

        sequences = SequenceService(session)
        assert sequences.current_value(SequenceService.BILLING_GROUP) == int(group.group_number.split("-")[1])
        assert sequences.current_value(SequenceService.BILLING_GROUP_RULE) == rule.sequence
