import sys
import unittest
from pathlib import Path

sys.path.append(str(Path(__file__).resolve().parents[1] / "src"))

from ticketflow.workflow.conditions import evaluate_condition, evaluate_rule_conditions, resolve_field
from ticketflow.workflow.schema import RuleConditions


class ConditionTests(unittest.TestCase):
    def test_numeric_comparison_uses_numbers_not_text(self):
        self.assertTrue(evaluate_condition(5, ">", 3))
        self.assertFalse(evaluate_condition(2, ">", 3))
        self.assertTrue(evaluate_condition("10", ">", "9"))
        self.assertTrue(evaluate_condition(3, ">=", "3"))
        self.assertTrue(evaluate_condition("3", "=", 3))

    def test_ordering_against_missing_value_is_false(self):
        self.assertFalse(evaluate_condition(None, ">", 1))
        self.assertFalse(evaluate_condition(None, "<", 1))

    def test_text_operators_ignore_case(self):
        self.assertTrue(evaluate_condition("Printer ERROR on floor 3", "contains", "error"))
        self.assertTrue(evaluate_condition("Billing question", "starts_with", "billing"))
        self.assertTrue(evaluate_condition("Invoice.PDF", "ends_with", ".pdf"))
        self.assertFalse(evaluate_condition(None, "contains", "x"))

    def test_membership(self):
        self.assertTrue(evaluate_condition("open", "in", ["open", "pending"]))
        self.assertTrue(evaluate_condition(2, "in", ["1", "2"]))
        self.assertTrue(evaluate_condition("closed", "not_in", ["open", "pending"]))

    def test_null_and_empty_operators(self):
        self.assertTrue(evaluate_condition(None, "is_null", None))
        self.assertTrue(evaluate_condition("", "is_empty", None))
        self.assertTrue(evaluate_condition([], "is_empty", None))
        self.assertTrue(evaluate_condition("x", "is_not_empty", None))
        self.assertTrue(evaluate_condition(0, "is_not_null", None))

    def test_unknown_operator_is_false(self):
        self.assertFalse(evaluate_condition(1, "approximately", 1))

    def test_resolve_field_follows_dotted_paths(self):
        data = {"customer": {"tier": "gold", "tags": ["vip", "eu"]}, "priority_id": 4}
        self.assertEqual(resolve_field(data, "priority_id"), 4)
        self.assertEqual(resolve_field(data, "customer.tier"), "gold")
        self.assertEqual(resolve_field(data, "customer.tags.1"), "eu")
        self.assertIsNone(resolve_field(data, "customer.region"))
        self.assertIsNone(resolve_field(data, ""))

    def test_rule_conditions_combine_with_and_or(self):
        ticket = {"priority_id": 4, "status": "open"}
        both = RuleConditions.model_validate(
            {
                "operator": "and",
                "rules": [
                    {"field": "priority_id", "operator": ">=", "value": 4},
                    {"field": "status", "operator": "=", "value": "closed"},
                ],
            }
        )
        self.assertFalse(evaluate_rule_conditions(both, ticket))

        either = both.model_copy(update={"operator": "or"})
        self.assertTrue(evaluate_rule_conditions(either, ticket))

    def test_empty_conditions_and_unknown_combinator_match(self):
        self.assertTrue(evaluate_rule_conditions(RuleConditions(), {}))
        odd = RuleConditions.model_validate(
            {"operator": "xor", "rules": [{"field": "status", "operator": "=", "value": "nope"}]}
        )
        self.assertTrue(evaluate_rule_conditions(odd, {"status": "open"}))


if __name__ == "__main__":
    unittest.main()
