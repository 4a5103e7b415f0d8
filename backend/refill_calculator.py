"""
refill_calculator.py
--------------------
Refill-date, consumption-rate and reminder calculations.

When a schedule parser is wired in, the daily consumption rate is worked out
from the medication's actual dosing pattern ("every other day" = 0.5/day) and
used to size the supply. Without one, or when that path fails, the pharmacy's
own days-supply figure is used and the result is tagged accordingly.

Strict inputs (fill dates, days supply) raise RefillCalculationError. The
multi-step helpers catch failures of the schedule-aware path and fall back.
"""

from __future__ import annotations

import logging
import math
from dataclasses import asdict, dataclass
from datetime import date, timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple

from schedule_parser import (
    FOUR_TIMES_DAILY_PATTERNS,
    THREE_TIMES_DAILY_PATTERNS,
    TWICE_DAILY_PATTERNS,
    matches_patterns,
    to_date,
)

logger = logging.getLogger(__name__)

REMINDER_TIMING: Dict[str, int] = {
    "early": 14,
    "primary": 7,
    "urgent": 3,
    "final": 1,
}

LOW_SUPPLY_THRESHOLD = 7
DEFAULT_DAYS_SUPPLY = 30
DEFAULT_DATE_RANGE = 30
DEFAULT_CONSUMPTION_RATE = 1.0
REFILL_EXPIRY_WINDOW_DAYS = 30
ACCURATE_ESTIMATE_DAYS = 7
MAX_DAYS_SUPPLY = 365

METHOD_SCHEDULE_ENHANCED = "schedule_enhanced"
METHOD_BASIC = "basic"
METHOD_BASIC_FALLBACK = "basic_fallback"


class RefillCalculationError(ValueError):
    """Raised for refill inputs that cannot produce a meaningful date."""


@dataclass(frozen=True)
class RefillCalculationResult:
    refill_date: date
    consumption_rate: float
    actual_days_supply: int
    calculation_method: str
    schedule_used: bool = False
    reason: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["refill_date"] = self.refill_date.isoformat()
        return data


@dataclass(frozen=True)
class ReminderEvent:
    reminder_date: date
    reminder_type: str
    message: str
    priority: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["reminder_date"] = self.reminder_date.isoformat()
        return data


def _field(medication: Any, name: str) -> Any:
    if medication is None:
        return None
    if isinstance(medication, dict):
        return medication.get(name)
    return getattr(medication, name, None)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _is_positive_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and value > 0


def _is_non_negative_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and value >= 0


class RefillCalculator:
    """Schedule-aware refill calculations.

    ``schedule_parser`` is optional; anything exposing a callable
    ``should_take_on_date(schedule, days_since_start, target_date, created_at)``
    qualifies. ``today`` returns the current calendar date and is injectable
    so results can be pinned in tests.
    """

    def __init__(self, schedule_parser: Any = None, today: Optional[Callable[[], date]] = None) -> None:
        self.reminder_timing = dict(REMINDER_TIMING)
        self.low_supply_threshold = LOW_SUPPLY_THRESHOLD
        self.schedule_parser = schedule_parser
        self._today = today or date.today

    def today(self) -> date:
        return self._today()

    # -- parser wiring -----------------------------------------------------

    def set_schedule_parser(self, parser: Any) -> None:
        if parser is not None and callable(getattr(parser, "should_take_on_date", None)):
            self.schedule_parser = parser
        else:
            logger.warning("Invalid schedule parser provided, must have should_take_on_date method")
            self.schedule_parser = None

    def get_schedule_parser(self) -> Any:
        return self.schedule_parser

    def is_schedule_parser_available(self) -> bool:
        return self.schedule_parser is not None and callable(
            getattr(self.schedule_parser, "should_take_on_date", None)
        )

    # -- validation --------------------------------------------------------

    def validate_medication_data(self, medication: Any) -> Dict[str, Any]:
        errors: List[str] = []
        if medication is None:
            return {"is_valid": False, "errors": ["Medication object is required"], "warnings": []}

        if not _field(medication, "date_filled"):
            errors.append("Date filled is required")

        days_supply = _field(medication, "days_supply")
        if not _is_number(days_supply) or days_supply <= 0:
            errors.append("Days supply must be a positive number")

        errors.extend(self._count_errors(medication))
        return {"is_valid": not errors, "errors": errors, "warnings": []}

    def _count_errors(self, medication: Any) -> List[str]:
        errors: List[str] = []
        quantity = _field(medication, "quantity")
        if quantity is not None and not _is_positive_int(quantity):
            errors.append("Quantity must be a positive integer")

        refills_remaining = _field(medication, "refills_remaining")
        if refills_remaining is not None and not _is_non_negative_int(refills_remaining):
            errors.append("Refills remaining must be a non-negative integer")
        return errors

    def validate_refill_data(self, refill_data: Dict[str, Any]) -> Dict[str, Any]:
        errors: List[str] = []

        date_filled = refill_data.get("date_filled")
        if date_filled:
            fill_date = to_date(date_filled)
            if fill_date is None:
                errors.append("Invalid date filled format")
            elif fill_date > self.today():
                errors.append("Date filled cannot be in the future")

        quantity = refill_data.get("quantity")
        if quantity is not None and not _is_positive_int(quantity):
            errors.append("Quantity must be a positive integer")

        days_supply = refill_data.get("days_supply")
        if days_supply is not None and (not _is_positive_int(days_supply) or days_supply > MAX_DAYS_SUPPLY):
            errors.append(f"Days supply must be between 1 and {MAX_DAYS_SUPPLY}")

        refills_remaining = refill_data.get("refills_remaining")
        if refills_remaining is not None and not _is_non_negative_int(refills_remaining):
            errors.append("Refills remaining must be a non-negative integer")

        return {"is_valid": not errors, "errors": errors}

    # -- core date math ----------------------------------------------------

    def calculate_refill_date(self, date_filled: Any, days_supply: Any) -> date:
        if not date_filled:
            raise RefillCalculationError("Date filled is required")
        if not _is_number(days_supply) or days_supply <= 0:
            raise RefillCalculationError("Days supply must be a positive number")

        fill_date = to_date(date_filled)
        if fill_date is None:
            raise RefillCalculationError(
                f"Invalid date filled format: {date_filled}. Expected valid date string or date object."
            )
        if fill_date > self.today():
            raise RefillCalculationError(f"Date filled ({fill_date.isoformat()}) cannot be in the future")

        return fill_date + timedelta(days=days_supply)

    def calculate_consumption_rate(self, schedule: Optional[str], date_range: int = DEFAULT_DATE_RANGE) -> float:
        """Average doses per day for a schedule over ``date_range`` days from today."""
        if not self.is_schedule_parser_available():
            logger.warning("No schedule parser available, using default consumption rate")
            return DEFAULT_CONSUMPTION_RATE
        if not schedule:
            logger.warning("No schedule provided, using default consumption rate")
            return DEFAULT_CONSUMPTION_RATE

        try:
            if matches_patterns(schedule, THREE_TIMES_DAILY_PATTERNS):
                return 3.0
            if matches_patterns(schedule, FOUR_TIMES_DAILY_PATTERNS):
                return 4.0
            if matches_patterns(schedule, TWICE_DAILY_PATTERNS):
                return 2.0

            today = self.today()
            total_doses = 0
            for offset in range(date_range):
                test_date = today + timedelta(days=offset)
                if self.schedule_parser.should_take_on_date(schedule, offset, test_date, today):
                    total_doses += 1
            return total_doses / date_range
        except Exception as err:
            logger.warning("Failed to calculate consumption rate from schedule %r: %s", schedule, err)
            return DEFAULT_CONSUMPTION_RATE

    def calculate_refill_date_with_schedule(
        self,
        date_filled: Any,
        quantity: Any,
        schedule: Optional[str],
        days_supply: Optional[int] = None,
        date_range: int = DEFAULT_DATE_RANGE,
    ) -> RefillCalculationResult:
        if not date_filled or not _is_number(quantity) or quantity <= 0:
            raise RefillCalculationError(
                "Invalid parameters: date_filled and quantity are required and must be positive"
            )

        fallback_days = days_supply or DEFAULT_DAYS_SUPPLY

        if not self.is_schedule_parser_available():
            logger.warning("No schedule parser available, using basic refill calculation")
            return RefillCalculationResult(
                refill_date=self.calculate_refill_date(date_filled, fallback_days),
                consumption_rate=DEFAULT_CONSUMPTION_RATE,
                actual_days_supply=fallback_days,
                calculation_method=METHOD_BASIC,
                reason="No schedule parser available",
            )

        try:
            consumption_rate = self.calculate_consumption_rate(schedule, date_range)
            actual_days_supply = math.ceil(quantity / consumption_rate)
            refill_date = self.calculate_refill_date(date_filled, actual_days_supply)
            return RefillCalculationResult(
                refill_date=refill_date,
                consumption_rate=consumption_rate,
                actual_days_supply=actual_days_supply,
                calculation_method=METHOD_SCHEDULE_ENHANCED,
                schedule_used=True,
            )
        except Exception as err:
            logger.warning("Schedule-enhanced calculation failed, falling back to basic: %s", err)
            return RefillCalculationResult(
                refill_date=self.calculate_refill_date(date_filled, fallback_days),
                consumption_rate=DEFAULT_CONSUMPTION_RATE,
                actual_days_supply=fallback_days,
                calculation_method=METHOD_BASIC_FALLBACK,
                reason="Schedule calculation failed, using basic method",
                error=str(err),
            )

    def days_until_refill(self, date_filled: Any, days_supply: Any) -> int:
        try:
            refill_date = self.calculate_refill_date(date_filled, days_supply)
        except RefillCalculationError as err:
            raise RefillCalculationError(f"Failed to calculate days until refill: {err}") from err
        return (refill_date - self.today()).days

    def days_of_supply_remaining(self, date_filled: Any, days_supply: Any) -> int:
        return max(0, self.days_until_refill(date_filled, days_supply))

    def is_supply_low(self, date_filled: Any, days_supply: Any) -> bool:
        return self.days_of_supply_remaining(date_filled, days_supply) <= self.low_supply_threshold

    def calculate_optimal_refill_date(self, date_filled: Any, days_supply: Any, lead_time: int = 3) -> date:
        return self.calculate_refill_date(date_filled, days_supply) - timedelta(days=lead_time)

    def _resolve_refill_date(self, medication: Any) -> Optional[Dict[str, Any]]:
        """Refill date and effective days supply for a medication, or None if it can't be sized."""
        date_filled = _field(medication, "date_filled")
        days_supply = _field(medication, "days_supply")
        quantity = _field(medication, "quantity")
        schedule = _field(medication, "schedule")

        if self.is_schedule_parser_available() and schedule and quantity:
            try:
                result = self.calculate_refill_date_with_schedule(
                    date_filled, quantity, schedule, days_supply=days_supply
                )
                return {
                    "refill_date": result.refill_date,
                    "effective_days_supply": result.actual_days_supply,
                    "calculation_details": result.to_dict(),
                }
            except RefillCalculationError as err:
                logger.warning("Enhanced calculation failed, falling back to basic: %s", err)
                if not days_supply:
                    raise
                return {
                    "refill_date": self.calculate_refill_date(date_filled, days_supply),
                    "effective_days_supply": days_supply,
                    "calculation_details": {
                        "calculation_method": METHOD_BASIC_FALLBACK,
                        "reason": "Enhanced calculation failed",
                        "error": str(err),
                    },
                }

        if not days_supply:
            return None

        reason = "No schedule or quantity data" if self.is_schedule_parser_available() else "No schedule parser available"
        return {
            "refill_date": self.calculate_refill_date(date_filled, days_supply),
            "effective_days_supply": days_supply,
            "calculation_details": {"calculation_method": METHOD_BASIC, "reason": reason},
        }

    def _try_resolve_refill_date(self, medication: Any) -> Tuple[Optional[Dict[str, Any]], Optional[str]]:
        """(resolved, None) on success; (None, message) when the refill data itself is unusable."""
        try:
            return self._resolve_refill_date(medication), None
        except RefillCalculationError as err:
            logger.warning("Cannot calculate refill date for %s: %s", _field(medication, "name"), err)
            return None, str(err)

    # -- reminders ---------------------------------------------------------

    def generate_refill_reminders(self, medication: Any) -> List[ReminderEvent]:
        if not _field(medication, "date_filled"):
            return []

        # days_supply may be absent when the schedule can size the supply
        errors = self._count_errors(medication)
        if errors:
            logger.warning("Invalid medication data for refill reminders: %s", errors)
            return []

        resolved, error = self._try_resolve_refill_date(medication)
        if resolved is None:
            if error is None:
                logger.warning("Not enough refill data to schedule reminders for %s", _field(medication, "name"))
            return []

        name = _field(medication, "name")
        refill_date = resolved["refill_date"]
        effective_days_supply = resolved["effective_days_supply"]
        today = self.today()
        reminders: List[ReminderEvent] = []

        if refill_date > today:
            tiers = (
                ("early", "early_refill_due",
                 f"Early reminder: Refill for {name} is due in {self.reminder_timing['early']} days"),
                ("primary", "refill_due",
                 f"Refill for {name} is due in {self.reminder_timing['primary']} days"),
                ("urgent", "refill_due",
                 f"URGENT: Refill for {name} is due in {self.reminder_timing['urgent']} days"),
                ("final", "refill_due",
                 f"FINAL REMINDER: Refill for {name} is due tomorrow"),
            )
            for tier, reminder_type, message in tiers:
                reminder_date = refill_date - timedelta(days=self.reminder_timing[tier])
                if reminder_date > today:
                    reminders.append(ReminderEvent(reminder_date, reminder_type, message))

        days_remaining = max(0, (refill_date - today).days)
        if days_remaining <= self.low_supply_threshold:
            reminders.append(ReminderEvent(
                today,
                "low_supply",
                f"WARNING: {name} supply is running low ({days_remaining} days remaining)",
            ))

        expiry_raw = _field(medication, "refill_expiry_date")
        if expiry_raw:
            expiry_date = to_date(expiry_raw)
            if expiry_date is None:
                logger.warning("Ignoring unreadable refill expiry date %r for %s", expiry_raw, name)
            else:
                days_until_expiry = (expiry_date - today).days
                if 0 < days_until_expiry <= REFILL_EXPIRY_WINDOW_DAYS:
                    reminders.append(ReminderEvent(
                        today,
                        "refill_expiring",
                        f"WARNING: Refills for {name} expire in {days_until_expiry} days",
                    ))

        logger.debug("Generated %d refill reminders for %s (days supply %s)", len(reminders), name, effective_days_supply)
        return reminders

    def generate_priority_reminders(self, medication: Any) -> List[ReminderEvent]:
        if not _field(medication, "date_filled"):
            return []

        resolved, _ = self._try_resolve_refill_date(medication)
        if resolved is None:
            return []

        name = _field(medication, "name")
        refill_date = resolved["refill_date"]
        today = self.today()
        days_until = (refill_date - today).days
        reminders: List[ReminderEvent] = []

        if days_until > 0:
            tiers = (
                ("early", "refill_planning", "low",
                 f"Plan ahead: {name} will run out in {days_until} days. Consider getting a refill soon."),
                ("primary", "refill_due", "medium",
                 f"Time to refill: {name} will run out in {days_until} days."),
                ("urgent", "refill_urgent", "high",
                 f"URGENT: {name} will run out in {days_until} days. Get refill now!"),
                ("final", "refill_critical", "critical",
                 f"CRITICAL: {name} runs out tomorrow! Get refill immediately!"),
            )
            for tier, reminder_type, priority, message in tiers:
                offset = self.reminder_timing[tier]
                if days_until >= offset:
                    reminders.append(ReminderEvent(
                        today + timedelta(days=days_until - offset), reminder_type, message, priority
                    ))

        days_remaining = max(0, days_until)
        if 0 < days_remaining <= self.low_supply_threshold:
            reminders.append(ReminderEvent(
                today, "low_supply", f"LOW SUPPLY: {name} has only {days_remaining} days left.", "high"
            ))

        if days_until < 0:
            reminders.append(ReminderEvent(
                today,
                "medication_expired",
                f"EXPIRED: {name} ran out {abs(days_until)} days ago. Get refill immediately!",
                "critical",
            ))

        return reminders

    # -- status ------------------------------------------------------------

    def get_priority(self, days_remaining: int) -> str:
        if days_remaining <= 1:
            return "critical"
        if days_remaining <= 3:
            return "high"
        if days_remaining <= 7:
            return "medium"
        if days_remaining <= 14:
            return "low"
        return "healthy"

    def calculate_refill_status(self, medication: Any) -> Dict[str, Any]:
        no_data = {"has_refill_data": False, "message": "No refill data available"}
        if not _field(medication, "date_filled"):
            return no_data

        resolved, error = self._try_resolve_refill_date(medication)
        if error is not None:
            return {**no_data, "error": error}
        if resolved is None:
            return no_data

        refill_date = resolved["refill_date"]
        days_until = (refill_date - self.today()).days
        days_remaining = max(0, days_until)
        is_low = days_remaining <= self.low_supply_threshold

        status, urgency = "good", "none"
        if days_until < 0:
            status, urgency = "overdue", "critical"
        elif is_low:
            status = "low"
            urgency = "high" if days_until <= 3 else "medium"
        elif days_until <= 7:
            # Shares the low-supply threshold, so ``low`` above always wins.
            status, urgency = "due_soon", "medium"

        name = _field(medication, "name")
        refills_remaining = _field(medication, "refills_remaining")
        expiry = to_date(_field(medication, "refill_expiry_date"))
        return {
            "has_refill_data": True,
            "status": status,
            "urgency": urgency,
            "days_until_refill": days_until,
            "days_of_supply_remaining": days_remaining,
            "refill_date": refill_date.isoformat(),
            "is_low_supply": is_low,
            "refills_remaining": refills_remaining or 0,
            "refill_expiry_date": expiry.isoformat() if expiry else None,
            "message": self.generate_status_message(status, days_until, name, refills_remaining),
            "calculation_details": resolved["calculation_details"],
        }

    def generate_status_message(self, status: str, days_until: int, medication_name: Optional[str], refills_remaining: Optional[int] = None) -> str:
        if status == "overdue":
            return f"{medication_name} refill is overdue by {abs(days_until)} days"
        if status == "low":
            return f"{medication_name} supply is running low ({days_until} days remaining)"
        if status == "due_soon":
            return f"{medication_name} refill is due in {days_until} days"
        if status == "good":
            return f"{medication_name} supply is good ({days_until} days remaining)"
        return f"{medication_name} refill status unknown"

    def get_refill_status_summary(self, medications: List[Any]) -> Dict[str, Any]:
        summary: Dict[str, Any] = {
            "total": len(medications),
            "needs_refill": 0,
            "low_supply": 0,
            "expired": 0,
            "healthy": 0,
            "no_data": 0,
            "medications": [],
        }
        for med in medications:
            refill_status = self.calculate_refill_status(med)
            summary["medications"].append({
                "id": _field(med, "id"),
                "name": _field(med, "name"),
                "dosage": _field(med, "dosage"),
                "schedule": _field(med, "schedule"),
                **refill_status,
            })

            if not refill_status["has_refill_data"]:
                summary["no_data"] += 1
            elif refill_status["status"] == "overdue":
                summary["expired"] += 1
            elif refill_status["status"] == "low":
                summary["low_supply"] += 1
            elif refill_status["days_until_refill"] <= self.reminder_timing["early"]:
                summary["needs_refill"] += 1
            else:
                summary["healthy"] += 1
        return summary

    def get_next_refill_due(self, medications: List[Any]) -> Optional[Dict[str, Any]]:
        next_refill = None
        for med in medications:
            refill_status = self.calculate_refill_status(med)
            if not refill_status["has_refill_data"] or refill_status["days_until_refill"] <= 0:
                continue
            if next_refill is None or refill_status["days_until_refill"] < next_refill["days_remaining"]:
                next_refill = {
                    "medication": _field(med, "name"),
                    "days_remaining": refill_status["days_until_refill"],
                    "refill_date": refill_status["refill_date"],
                    "priority": self.get_priority(refill_status["days_until_refill"]),
                }
        return next_refill

    # -- diagnostics -------------------------------------------------------

    def compare_calculation_methods(self, date_filled: Any, quantity: Any, schedule: Optional[str], pharmacy_days_supply: Any) -> Dict[str, Any]:
        """Pharmacy days-supply estimate next to the schedule-derived one."""
        if not self.is_schedule_parser_available() or not schedule:
            return {
                "comparison": "unavailable",
                "message": "Schedule parser not available or no schedule provided",
            }

        try:
            basic_refill_date = self.calculate_refill_date(date_filled, pharmacy_days_supply)
            enhanced = self.calculate_refill_date_with_schedule(
                date_filled, quantity, schedule, days_supply=pharmacy_days_supply
            )
            today = self.today()
            difference = enhanced.actual_days_supply - pharmacy_days_supply
            return {
                "comparison": "available",
                "basic": {
                    "refill_date": basic_refill_date.isoformat(),
                    "days_until": (basic_refill_date - today).days,
                    "days_supply": pharmacy_days_supply,
                    "assumption": "Daily consumption",
                },
                "enhanced": {
                    "refill_date": enhanced.refill_date.isoformat(),
                    "days_until": (enhanced.refill_date - today).days,
                    "days_supply": enhanced.actual_days_supply,
                    "consumption_rate": enhanced.consumption_rate,
                    "calculation_method": enhanced.calculation_method,
                    "assumption": f'Schedule: "{schedule}"',
                },
                "difference": {
                    "days": difference,
                    "accuracy_improvement": abs(difference),
                    "percentage_change": round(difference / pharmacy_days_supply * 100),
                },
                "recommendation": self.generate_calculation_recommendation(difference, enhanced.consumption_rate),
            }
        except (ValueError, TypeError, ZeroDivisionError) as err:
            logger.warning("Failed to compare calculation methods: %s", err)
            return {
                "comparison": "error",
                "message": "Failed to compare calculation methods",
                "error": str(err),
            }

    def generate_calculation_recommendation(self, difference: int, consumption_rate: float) -> str:
        if abs(difference) < ACCURATE_ESTIMATE_DAYS:
            return "Pharmacy estimate is accurate for this schedule"
        if difference > 0:
            return (
                "Pharmacy estimate is too conservative. "
                f"Actual supply will last {difference} days longer due to schedule pattern."
            )
        return (
            "Pharmacy estimate is too optimistic. "
            f"Actual supply will run out {abs(difference)} days sooner due to schedule pattern."
        )
