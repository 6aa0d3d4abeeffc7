"""Tests for the shared condition evaluator."""
import pytest

from models.schemas import ContactAttributes, TriggerCondition
from utils.conditions import evaluate_condition, evaluate_conditions, explain_conditions, resolve_attribute


def cond(ctype="lead_source", op="equals", value=None, field_name=None) -> TriggerCondition:
    return TriggerCondition(condition_type=ctype, condition_operator=op,
                            condition_value=value, field_name=field_name)


class TestOperators:

    def test_equals_is_exact(self, indiamart_contact):
        assert evaluate_condition(cond(value="IndiaMART"), indiamart_contact)
        assert not evaluate_condition(cond(value="indiamart"), indiamart_contact)

    def test_not_equals(self, indiamart_contact):
        assert evaluate_condition(cond(op="not_equals", value="website"), indiamart_contact)
        assert not evaluate_condition(cond(op="not_equals", value="IndiaMART"), indiamart_contact)

    def test_contains_is_case_insensitive(self, indiamart_contact):
        assert evaluate_condition(cond(op="contains", value="mart"), indiamart_contact)
        assert evaluate_condition(cond(op="contains", value="INDIA"), indiamart_contact)
        assert not evaluate_condition(cond(op="contains", value="justdial"), indiamart_contact)

    def test_any_matches_even_missing_attribute(self):
        contact = ContactAttributes(contact_id="c_x")
        assert evaluate_condition(cond(op="any"), contact)

    def test_missing_attribute_is_empty_string(self):
        contact = ContactAttributes(contact_id="c_x")
        assert not evaluate_condition(cond(value="IndiaMART"), contact)
        assert evaluate_condition(cond(op="not_equals", value="IndiaMART"), contact)


class TestMisconfiguration:

    def test_unknown_operator_does_not_match(self, indiamart_contact):
        assert not evaluate_condition(cond(op="regex", value=".*"), indiamart_contact)

    def test_unknown_condition_type_does_not_match(self, indiamart_contact):
        assert not evaluate_condition(cond(ctype="city", value="Pune"), indiamart_contact)

    def test_missing_value_does_not_match(self, indiamart_contact):
        assert not evaluate_condition(cond(op="equals", value=None), indiamart_contact)


class TestCustomFields:

    def test_custom_field_by_name(self, indiamart_contact):
        assert evaluate_condition(cond(ctype="custom_field", value="Pune", field_name="city"), indiamart_contact)

    def test_custom_field_missing_key(self, indiamart_contact):
        assert not evaluate_condition(cond(ctype="custom_field", value="x", field_name="nope"), indiamart_contact)

    def test_resolve_attribute_stringifies(self):
        contact = ContactAttributes(contact_id="c", custom_fields={"score": 42})
        assert resolve_attribute(cond(ctype="custom_field", field_name="score"), contact) == "42"

    def test_plain_dict_contact(self):
        assert evaluate_condition(cond(value="website"), {"lead_source": "website"})


class TestConjunction:

    def test_empty_list_matches_everything(self, indiamart_contact):
        assert evaluate_conditions([], indiamart_contact)

    def test_all_must_hold(self, indiamart_contact):
        both = [cond(value="IndiaMART"), cond(ctype="entry_type", value="webform")]
        one_wrong = [cond(value="IndiaMART"), cond(ctype="entry_type", value="phone")]
        assert evaluate_conditions(both, indiamart_contact)
        assert not evaluate_conditions(one_wrong, indiamart_contact)

    def test_explain_reports_each_condition(self, indiamart_contact):
        checks = explain_conditions(
            [cond(value="IndiaMART"), cond(ctype="entry_type", value="phone")],
            indiamart_contact,
        )
        assert [c["result"] for c in checks] == [True, False]
        assert checks[1]["contact_value"] == "webform"

    def test_explain_missing_value_shows_na(self):
        checks = explain_conditions([cond(value="x")], ContactAttributes(contact_id="c"))
        assert checks[0]["contact_value"] == "N/A"
