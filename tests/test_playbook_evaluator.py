"""Tests for playbook condition evaluation."""

import json
import logging

from churnpilot.services.normalizer import normalize_record
from churnpilot.services.playbook_evaluator import evaluate_condition, evaluate_conditions, parse_conditions
from churnpilot.services.risk_scoring import score_record

HIGH_RISK = [{"field": "churn_score", "operator": "greater_than", "value": 0.70}]


def _context(**row):
    return score_record(normalize_record({"customer_id": "c1", **row})).as_context()


SCENARIO_A = _context(last_login_days_ago=95, logins_last_30_days=2, support_tickets_opened=6, subscription_plan="free")
SCENARIO_B = _context(last_login_days_ago=1, logins_last_30_days=25, support_tickets_opened=0, subscription_plan="enterprise")


# ── Scenario ─────────────────────────────────────────────
def test_high_risk_playbook_matches_a_not_b():
    assert evaluate_conditions(SCENARIO_A, HIGH_RISK) is True
    assert evaluate_conditions(SCENARIO_B, HIGH_RISK) is False


def test_conditions_stored_as_json_text():
    assert evaluate_conditions(SCENARIO_A, json.dumps(HIGH_RISK)) is True


# ── Operators ────────────────────────────────────────────
def test_equals_is_case_sensitive():
    assert evaluate_condition({"field": "subscription_plan", "operator": "equals", "value": "Free"}, SCENARIO_A)
    assert not evaluate_condition({"field": "subscription_plan", "operator": "equals", "value": "free"}, SCENARIO_A)


def test_equals_compares_string_form():
    ctx = {"logins_last_30_days": 2}
    assert evaluate_condition({"field": "logins_last_30_days", "operator": "equals", "value": "2"}, ctx)
    assert evaluate_condition({"field": "logins_last_30_days", "operator": "not_equals", "value": 3}, ctx)


def test_less_than_coerces_strings():
    ctx = {"churn_score": "0.25"}
    assert evaluate_condition({"field": "churn_score", "operator": "less_than", "value": "0.3"}, ctx)


def test_contains_on_reason_string():
    cond = {"field": "churn_reason", "operator": "contains", "value": "support"}
    assert evaluate_condition(cond, SCENARIO_A)
    assert not evaluate_condition(cond, SCENARIO_B)


def test_and_semantics():
    conditions = HIGH_RISK + [{"field": "risk_level", "operator": "equals", "value": "low"}]
    assert evaluate_conditions(SCENARIO_A, conditions) is False


def test_empty_condition_list_matches():
    assert evaluate_conditions(SCENARIO_B, []) is True
    assert evaluate_conditions(SCENARIO_B, "") is True


# ── Fail closed ──────────────────────────────────────────
def test_non_numeric_greater_than_is_non_match():
    ctx = {"subscription_plan": "Free"}
    assert evaluate_condition({"field": "subscription_plan", "operator": "greater_than", "value": 1}, ctx) is False
    assert evaluate_condition({"field": "churn_score", "operator": "greater_than", "value": "high"}, SCENARIO_A) is False


def test_unknown_field_and_operator_fail_closed(caplog):
    with caplog.at_level(logging.WARNING):
        assert evaluate_conditions(SCENARIO_A, [{"field": "shoe_size", "operator": "equals", "value": 9}], "pb-1") is False
        assert evaluate_conditions(SCENARIO_A, [{"field": "churn_score", "operator": "between", "value": 1}], "pb-1") is False
    assert "pb-1" in caplog.text


def test_malformed_definitions_never_raise():
    assert evaluate_conditions(SCENARIO_A, "{not json") is False
    assert evaluate_conditions(SCENARIO_A, {"field": "churn_score"}) is False
    assert evaluate_conditions(SCENARIO_A, ["churn_score > 0.7"]) is False
    assert evaluate_conditions(SCENARIO_A, [{"operator": "equals"}]) is False
    assert parse_conditions(None) == []
