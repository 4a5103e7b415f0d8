"""Tests for refill date math, consumption rates, reminders and status."""

from datetime import date, timedelta

import pytest

from refill_calculator import (
    METHOD_BASIC,
    METHOD_BASIC_FALLBACK,
    METHOD_SCHEDULE_ENHANCED,
    RefillCalculationError,
    RefillCalculator,
)
from schedule_parser import ScheduleParser

TODAY = date(2025, 3, 1)


def days_ago(n):
    return (TODAY - timedelta(days=n)).isoformat()


@pytest.fixture
def calculator():
    return RefillCalculator(ScheduleParser(), today=lambda: TODAY)


@pytest.fixture
def basic_calculator():
    return RefillCalculator(today=lambda: TODAY)


def test_calculate_refill_date(calculator):
    assert calculator.calculate_refill_date("2025-01-01", 30) == date(2025, 1, 31)
    assert calculator.calculate_refill_date(date(2025, 2, 1), 28) == date(2025, 3, 1)


@pytest.mark.parametrize("date_filled, days_supply", [
    (None, 30),
    ("", 30),
    ("2025-01-01", 0),
    ("2025-01-01", -5),
    ("2025-01-01", None),
    ("2025-01-01", "30"),
    ("yesterday", 30),
    ("2025-03-02", 30),
])
def test_calculate_refill_date_rejects_bad_input(calculator, date_filled, days_supply):
    with pytest.raises(RefillCalculationError):
        calculator.calculate_refill_date(date_filled, days_supply)


def test_consumption_rate_fast_paths(calculator):
    assert calculator.calculate_consumption_rate("twice daily") == 2.0
    assert calculator.calculate_consumption_rate("three times a day") == 3.0
    assert calculator.calculate_consumption_rate("qid") == 4.0


def test_consumption_rate_from_simulation(calculator):
    assert calculator.calculate_consumption_rate("once daily") == 1.0
    assert calculator.calculate_consumption_rate("every other day") == 0.5
    assert calculator.calculate_consumption_rate("every 3 days", 30) == pytest.approx(10 / 30)


def test_consumption_rate_defaults(calculator, basic_calculator):
    assert calculator.calculate_consumption_rate("") == 1.0
    assert calculator.calculate_consumption_rate(None) == 1.0
    assert basic_calculator.calculate_consumption_rate("twice daily") == 1.0


def test_consumption_rate_parser_failure_defaults():
    class BrokenParser:
        def should_take_on_date(self, *args):
            raise RuntimeError("boom")

    calculator = RefillCalculator(BrokenParser(), today=lambda: TODAY)
    assert calculator.calculate_consumption_rate("every other day") == 1.0


def test_schedule_enhanced_every_other_day(calculator):
    """90 tablets every other day last 180 days."""
    result = calculator.calculate_refill_date_with_schedule("2025-01-01", 90, "every other day")
    assert result.calculation_method == METHOD_SCHEDULE_ENHANCED
    assert result.consumption_rate == 0.5
    assert result.actual_days_supply == 180
    assert result.refill_date == date(2025, 1, 1) + timedelta(days=180)
    assert result.schedule_used is True


def test_schedule_enhanced_rounds_up(calculator):
    result = calculator.calculate_refill_date_with_schedule("2025-01-01", 45, "twice daily")
    assert result.actual_days_supply == 23


def test_schedule_enhanced_without_parser(basic_calculator):
    result = basic_calculator.calculate_refill_date_with_schedule("2025-01-01", 60, "twice daily", days_supply=30)
    assert result.calculation_method == METHOD_BASIC
    assert result.actual_days_supply == 30
    assert result.refill_date == date(2025, 1, 31)


def test_schedule_enhanced_requires_quantity(calculator):
    result = calculator.calculate_refill_date_with_schedule("2025-02-01", 30, "once daily", days_supply=30)
    assert result.calculation_method == METHOD_SCHEDULE_ENHANCED

    with pytest.raises(RefillCalculationError):
        calculator.calculate_refill_date_with_schedule("2025-02-01", 0, "once daily")


def test_schedule_enhanced_fallback_tag(calculator, monkeypatch):
    monkeypatch.setattr(calculator, "calculate_consumption_rate", lambda *args: 0)
    result = calculator.calculate_refill_date_with_schedule("2025-01-01", 30, "once daily", days_supply=20)
    assert result.calculation_method == METHOD_BASIC_FALLBACK
    assert result.actual_days_supply == 20
    assert result.error


def test_days_until_and_remaining(calculator):
    assert calculator.days_until_refill(days_ago(10), 30) == 20
    assert calculator.days_until_refill(days_ago(40), 30) == -10
    assert calculator.days_of_supply_remaining(days_ago(40), 30) == 0
    assert calculator.is_supply_low(days_ago(23), 30) is True
    assert calculator.is_supply_low(days_ago(22), 30) is False
    assert calculator.calculate_optimal_refill_date("2025-01-01", 30) == date(2025, 1, 28)


def test_days_until_refill_wraps_errors(calculator):
    with pytest.raises(RefillCalculationError, match="Failed to calculate days until refill"):
        calculator.days_until_refill(None, 30)


def test_validate_medication_data(calculator):
    good = {"date_filled": "2025-01-01", "days_supply": 30, "quantity": 30, "refills_remaining": 0}
    assert calculator.validate_medication_data(good)["is_valid"] is True

    bad = calculator.validate_medication_data({"days_supply": 0, "quantity": 1.5, "refills_remaining": -1})
    assert bad["is_valid"] is False
    assert len(bad["errors"]) == 4

    assert calculator.validate_medication_data(None)["errors"] == ["Medication object is required"]


def test_validate_refill_data(calculator):
    assert calculator.validate_refill_data({})["is_valid"] is True
    assert calculator.validate_refill_data({"date_filled": "2025-03-01", "days_supply": 365})["is_valid"] is True

    result = calculator.validate_refill_data({
        "date_filled": "2025-03-05",
        "quantity": 0,
        "days_supply": 366,
        "refills_remaining": -2,
    })
    assert result["is_valid"] is False
    assert result["errors"] == [
        "Date filled cannot be in the future",
        "Quantity must be a positive integer",
        "Days supply must be between 1 and 365",
        "Refills remaining must be a non-negative integer",
    ]
    assert calculator.validate_refill_data({"date_filled": "03/05"})["errors"] == ["Invalid date filled format"]


def test_reminders_require_date_filled(calculator):
    assert calculator.generate_refill_reminders({"name": "Metformin", "days_supply": 30}) == []
    assert calculator.generate_refill_reminders({"name": "Metformin", "date_filled": TODAY.isoformat()}) == []
    assert calculator.generate_refill_reminders({
        "name": "Metformin", "date_filled": TODAY.isoformat(), "days_supply": 30, "quantity": -3,
    }) == []


def test_reminders_for_fresh_fill(calculator):
    med = {"name": "Lisinopril", "date_filled": TODAY.isoformat(), "days_supply": 30}
    reminders = calculator.generate_refill_reminders(med)

    refill_date = TODAY + timedelta(days=30)
    assert [(r.reminder_type, r.reminder_date) for r in reminders] == [
        ("early_refill_due", refill_date - timedelta(days=14)),
        ("refill_due", refill_date - timedelta(days=7)),
        ("refill_due", refill_date - timedelta(days=3)),
        ("refill_due", refill_date - timedelta(days=1)),
    ]
    assert reminders[-1].message == "FINAL REMINDER: Refill for Lisinopril is due tomorrow"


def test_reminders_near_refill_date(calculator):
    """Five days out: only the urgent and final tiers are still ahead, plus low supply."""
    med = {"name": "Lisinopril", "date_filled": days_ago(25), "days_supply": 30}
    reminders = calculator.generate_refill_reminders(med)
    types = [r.reminder_type for r in reminders]
    assert types == ["refill_due", "refill_due", "low_supply"]
    assert reminders[-1].reminder_date == TODAY
    assert "5 days remaining" in reminders[-1].message


def test_reminders_use_schedule_enhanced_supply(calculator):
    """90 tablets every other day: the pharmacy's 30 days is not treated as low supply."""
    med = {
        "name": "Furosemide", "date_filled": days_ago(25), "days_supply": 30,
        "quantity": 90, "schedule": "every other day",
    }
    reminders = calculator.generate_refill_reminders(med)
    assert "low_supply" not in [r.reminder_type for r in reminders]
    assert len(reminders) == 4


def test_reminders_refill_expiring(calculator):
    med = {
        "name": "Lisinopril", "date_filled": TODAY.isoformat(), "days_supply": 90,
        "refill_expiry_date": (TODAY + timedelta(days=20)).isoformat(),
    }
    reminders = calculator.generate_refill_reminders(med)
    expiring = [r for r in reminders if r.reminder_type == "refill_expiring"]
    assert len(expiring) == 1
    assert expiring[0].message == "WARNING: Refills for Lisinopril expire in 20 days"

    med["refill_expiry_date"] = (TODAY + timedelta(days=45)).isoformat()
    assert "refill_expiring" not in [r.reminder_type for r in calculator.generate_refill_reminders(med)]


def test_reminder_to_dict(calculator):
    med = {"name": "Lisinopril", "date_filled": TODAY.isoformat(), "days_supply": 30}
    first = calculator.generate_refill_reminders(med)[0].to_dict()
    assert first["reminder_date"] == (TODAY + timedelta(days=16)).isoformat()
    assert first["reminder_type"] == "early_refill_due"


def test_priority_reminders(calculator):
    med = {"name": "Lisinopril", "date_filled": days_ago(20), "days_supply": 30}
    reminders = calculator.generate_priority_reminders(med)
    assert [(r.reminder_type, r.priority) for r in reminders] == [
        ("refill_due", "medium"),
        ("refill_urgent", "high"),
        ("refill_critical", "critical"),
    ]

    overdue = calculator.generate_priority_reminders({"name": "Lisinopril", "date_filled": days_ago(35), "days_supply": 30})
    assert [r.reminder_type for r in overdue] == ["medication_expired"]
    assert "ran out 5 days ago" in overdue[0].message


@pytest.mark.parametrize("days, expected", [
    (0, "critical"),
    (1, "critical"),
    (2, "high"),
    (3, "high"),
    (4, "medium"),
    (7, "medium"),
    (8, "low"),
    (14, "low"),
    (15, "healthy"),
])
def test_get_priority(calculator, days, expected):
    assert calculator.get_priority(days) == expected


@pytest.mark.parametrize("filled_days_ago, status, urgency", [
    (5, "good", "none"),
    (25, "low", "medium"),
    (28, "low", "high"),
    (31, "overdue", "critical"),
])
def test_calculate_refill_status(calculator, filled_days_ago, status, urgency):
    med = {"name": "Lisinopril", "date_filled": days_ago(filled_days_ago), "days_supply": 30, "refills_remaining": 2}
    refill_status = calculator.calculate_refill_status(med)
    assert refill_status["has_refill_data"] is True
    assert refill_status["status"] == status
    assert refill_status["urgency"] == urgency
    assert refill_status["days_until_refill"] == 30 - filled_days_ago
    assert refill_status["refills_remaining"] == 2


def test_calculate_refill_status_without_data(calculator):
    assert calculator.calculate_refill_status({"name": "Aspirin"}) == {
        "has_refill_data": False,
        "message": "No refill data available",
    }
    assert calculator.calculate_refill_status({"name": "Aspirin", "date_filled": "2025-01-01"})["has_refill_data"] is False


def test_status_messages(calculator):
    assert calculator.generate_status_message("overdue", -3, "Aspirin") == "Aspirin refill is overdue by 3 days"
    assert calculator.generate_status_message("good", 20, "Aspirin") == "Aspirin supply is good (20 days remaining)"
    assert calculator.generate_status_message("other", 0, "Aspirin") == "Aspirin refill status unknown"


def test_refill_status_summary_and_next_due(calculator):
    meds = [
        {"id": "a", "name": "A", "date_filled": days_ago(35), "days_supply": 30},
        {"id": "b", "name": "B", "date_filled": days_ago(26), "days_supply": 30},
        {"id": "c", "name": "C", "date_filled": days_ago(20), "days_supply": 30},
        {"id": "d", "name": "D", "date_filled": days_ago(1), "days_supply": 90},
        {"id": "e", "name": "E"},
    ]
    summary = calculator.get_refill_status_summary(meds)
    assert summary["total"] == 5
    assert (summary["expired"], summary["low_supply"], summary["needs_refill"], summary["healthy"], summary["no_data"]) == (1, 1, 1, 1, 1)
    assert [m["id"] for m in summary["medications"]] == ["a", "b", "c", "d", "e"]

    next_due = calculator.get_next_refill_due(meds)
    assert next_due["medication"] == "B"
    assert next_due["days_remaining"] == 4
    assert next_due["priority"] == "medium"


def test_compare_calculation_methods(calculator, basic_calculator):
    comparison = calculator.compare_calculation_methods("2025-01-01", 90, "every other day", 30)
    assert comparison["comparison"] == "available"
    assert comparison["basic"]["days_supply"] == 30
    assert comparison["enhanced"]["days_supply"] == 180
    assert comparison["difference"] == {"days": 150, "accuracy_improvement": 150, "percentage_change": 500}
    assert comparison["recommendation"].startswith("Pharmacy estimate is too conservative")

    assert basic_calculator.compare_calculation_methods("2025-01-01", 90, "once daily", 30)["comparison"] == "unavailable"
    assert calculator.compare_calculation_methods("2025-01-01", 90, "", 30)["comparison"] == "unavailable"
    assert calculator.compare_calculation_methods("2025-01-01", 90, "once daily", 0)["comparison"] == "error"


def test_calculation_recommendation(calculator):
    assert calculator.generate_calculation_recommendation(3, 1.0) == "Pharmacy estimate is accurate for this schedule"
    assert "run out 10 days sooner" in calculator.generate_calculation_recommendation(-10, 2.0)


def test_schedule_parser_injection(basic_calculator):
    assert basic_calculator.is_schedule_parser_available() is False
    parser = ScheduleParser()
    basic_calculator.set_schedule_parser(parser)
    assert basic_calculator.get_schedule_parser() is parser
    assert basic_calculator.is_schedule_parser_available() is True


def test_reminders_skip_unusable_fill_date(calculator):
    """A future or unreadable fill date yields no reminders instead of an error."""
    future = {"name": "Metformin", "date_filled": "2025-03-05", "days_supply": 30, "quantity": 30, "schedule": "once daily"}
    garbled = {"name": "Metformin", "date_filled": "03/05", "days_supply": 30}
    assert calculator.generate_refill_reminders(future) == []
    assert calculator.generate_refill_reminders(garbled) == []
    assert calculator.generate_priority_reminders(future) == []


def test_status_reports_unusable_fill_date(calculator):
    bad = {"name": "Metformin", "date_filled": "2025-03-05", "days_supply": 30, "quantity": 30, "schedule": "once daily"}
    refill_status = calculator.calculate_refill_status(bad)
    assert refill_status["has_refill_data"] is False
    assert "cannot be in the future" in refill_status["error"]


def test_summary_counts_unusable_fill_date_as_no_data(calculator):
    bad = {"id": "bad", "name": "Metformin", "date_filled": "2025-03-05", "days_supply": 30, "quantity": 30, "schedule": "once daily"}
    good = {"id": "good", "name": "Lisinopril", "date_filled": days_ago(26), "days_supply": 30}

    summary = calculator.get_refill_status_summary([bad, good])
    assert summary["total"] == 2
    assert summary["no_data"] == 1
    assert summary["low_supply"] == 1

    next_due = calculator.get_next_refill_due([bad, good])
    assert next_due["medication"] == "Lisinopril"
