"""Tests for plan limit policy."""

import pytest

from gotcha.features.plans.service import (
    UNLIMITED,
    accessible_response_count,
    is_over_limit,
    is_over_project_limit,
    plan_limit,
    plan_limit_display,
    project_limit,
    project_limit_display,
    should_show_upgrade_warning,
)


def test_limits():
    assert plan_limit("FREE") == 500
    assert plan_limit("PRO") == UNLIMITED
    assert plan_limit("UNKNOWN") == 500
    assert plan_limit(None) == 500


def test_limit_display():
    assert plan_limit_display("FREE") == "500"
    assert plan_limit_display("PRO") == "∞"


@pytest.mark.parametrize(
    "plan, used, expected",
    [
        ("FREE", 500, False),
        ("FREE", 501, True),
        ("FREE", 0, False),
        ("PRO", 999999, False),
        ("PRO", 10_000_000, False),
        ("TEAM", 501, True),
        ("FREE", -1, False),
    ],
)
def test_is_over_limit(plan, used, expected):
    assert is_over_limit(plan, used) is expected


def test_over_limit_matches_ceiling_for_non_pro():
    for used in range(490, 510):
        assert is_over_limit("FREE", used) == (used > plan_limit("FREE"))


@pytest.mark.parametrize(
    "plan, used, expected",
    [
        ("FREE", 400, True),
        ("FREE", 399, False),
        ("FREE", 501, True),
        ("PRO", 900_000, False),
        ("FREE", -50, False),
    ],
)
def test_upgrade_warning(plan, used, expected):
    assert should_show_upgrade_warning(plan, used) is expected


def test_warning_without_over_limit():
    assert should_show_upgrade_warning("FREE", 450) is True
    assert is_over_limit("FREE", 450) is False


def test_accessible_count():
    assert accessible_response_count("FREE", 1000) == 500
    assert accessible_response_count("FREE", 20) == 20
    assert accessible_response_count("PRO", 100000) == 100000


def test_plan_names_are_case_insensitive():
    assert plan_limit("pro") == UNLIMITED
    assert is_over_limit("pro", 10_000) is False
    assert accessible_response_count("Free", 1000) == 500


def test_project_limits():
    assert project_limit("FREE") == 1
    assert project_limit_display("FREE") == "1"
    assert project_limit_display("PRO") == "∞"
    assert is_over_project_limit("FREE", 0) is False
    assert is_over_project_limit("FREE", 1) is True
    assert is_over_project_limit("PRO", 50) is False
