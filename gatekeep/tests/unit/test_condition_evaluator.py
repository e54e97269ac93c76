from __future__ import annotations

import pytest

from gatekeep.core.errors import AuthorizationEvaluationError
from gatekeep.services.authz.evaluator import (
    ConditionInvalidError,
    ConditionTooComplexError,
    evaluate_condition,
    validate_condition,
)


def test_evaluate_basic_operators() -> None:
    context = {"user": {"department": "eng", "clearance": 3, "tags": ["a", "b"]}, "resource": {"id": "docs/1"}}
    assert evaluate_condition({"eq": [{"var": "user.department"}, "eng"]}, context)
    assert evaluate_condition({"ne": [{"var": "user.department"}, "ops"]}, context)
    assert evaluate_condition({"in": [{"var": "user.department"}, ["eng", "ops"]]}, context)
    assert evaluate_condition({"not_in": [{"var": "user.department"}, ["hr"]]}, context)
    assert evaluate_condition({"gte": [{"var": "user.clearance"}, 3]}, context)
    assert not evaluate_condition({"gt": [{"var": "user.clearance"}, 3]}, context)
    assert evaluate_condition({"contains": [{"var": "user.tags"}, "b"]}, context)
    assert evaluate_condition({"starts_with": [{"var": "resource.id"}, "docs/"]}, context)
    assert evaluate_condition({"eq": {"field": "user.clearance", "value": 3}}, context)
    assert evaluate_condition({"lte": {"left": {"var": "user.clearance"}, "right": 3}}, context)


def test_logical_operators_and_missing_paths() -> None:
    context = {"user": {"active": True}}
    condition = {"all": [{"eq": [{"var": "user.active"}, True]}, {"not": {"eq": [{"var": "user.missing"}, 1]}}]}
    assert evaluate_condition(condition, context)
    assert evaluate_condition({"any": [False, {"lt": [{"var": "user.missing"}, 5]}, True]}, context)
    assert evaluate_condition(None, context)
    assert evaluate_condition({}, context)


def test_time_windows() -> None:
    assert evaluate_condition({"time_between": ["23:30", {"start": "22:00", "end": "06:00"}]}, {})
    assert not evaluate_condition({"time_between": ["12:00", {"start": "22:00", "end": "06:00"}]}, {})
    assert evaluate_condition(
        {"date_between": ["2026-03-01", {"start": "2026-01-01", "end": "2026-12-31"}]},
        {},
    )


def test_invalid_conditions_raise_authorization_errors() -> None:
    with pytest.raises(ConditionInvalidError):
        evaluate_condition({"regex": [1, 2]}, {})
    with pytest.raises(ConditionInvalidError):
        evaluate_condition({"eq": [1, 2], "ne": [1, 2]}, {})
    with pytest.raises(AuthorizationEvaluationError):
        evaluate_condition({"all": "not-a-list"}, {})
    with pytest.raises(ConditionInvalidError):
        evaluate_condition("user.admin == true", {})


def test_depth_limit() -> None:
    nested = {"not": {"not": {"not": {"eq": [1, 1]}}}}
    validate_condition(nested, max_depth=5)
    with pytest.raises(ConditionTooComplexError):
        validate_condition(nested, max_depth=3)
