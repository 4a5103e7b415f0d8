"""
schedule_parser.py
------------------
Rule-based parser that turns free-text medication schedules ("twice daily",
"every other day", "take at bedtime") into per-day time slots.

Matching is plain case-insensitive substring search against the fixed phrase
tables below, evaluated in a fixed order. The same text always lands in the
same slots, which keeps reminder dates stable between requests.
"""

from __future__ import annotations

import logging
import re
from datetime import date, datetime
from typing import Any, Dict, Iterable, List, Optional

logger = logging.getLogger(__name__)

MORNING = "morning"
AFTERNOON = "afternoon"
EVENING = "evening"
NIGHT = "night"

# Slots rendered in the daily schedule. NIGHT only comes out of
# determine_time_slots for four-times-daily text.
DISPLAY_SLOTS = (MORNING, AFTERNOON, EVENING)

TIME_SLOTS: Dict[str, Dict[str, str]] = {
    MORNING: {"default_time": "8:00 AM", "time_range": "5:00 AM - 12:00 PM"},
    AFTERNOON: {"default_time": "12:00 PM", "time_range": "12:00 PM - 5:00 PM"},
    EVENING: {"default_time": "6:00 PM", "time_range": "5:00 PM - 5:00 AM"},
}

DEFAULT_DISPLAY_TIME = "8:00 AM"
UNKNOWN = "Unknown"

# Frequency phrasings
ONCE_DAILY_PATTERNS = (
    "once daily", "once a day", "1 time a day", "one time a day",
    "once per day", "daily", "every day",
)
TWICE_DAILY_PATTERNS = (
    "twice daily", "twice a day", "2 times a day", "two times a day",
    "twice per day", "bid", "every 12 hours",
)
THREE_TIMES_DAILY_PATTERNS = (
    "three times daily", "three times a day", "3 times a day",
    "three times per day", "tid", "every 8 hours",
)
FOUR_TIMES_DAILY_PATTERNS = (
    "four times daily", "four times a day", "4 times a day",
    "four times per day", "qid", "every 6 hours",
)

# Time-of-day keywords
MORNING_PATTERNS = ("morning", "breakfast", "am", "wake up", "before breakfast")
AFTERNOON_PATTERNS = ("afternoon", "lunch", "midday", "noon", "after lunch")
EVENING_PATTERNS = ("evening", "night", "dinner", "pm", "bedtime", "before bed", "at night")

# Cyclical and alternating patterns
EVERY_OTHER_DAY_PATTERNS = ("every other day", "every second day", "alternate days")
EVERY_THREE_DAYS_PATTERNS = ("every 3 days", "every third day")
WEEKLY_PATTERNS = ("once a week", "weekly", "once weekly", "every week")
MONTHLY_PATTERNS = ("once a month", "monthly", "once monthly", "every month")
ALTERNATING_PATTERNS = ("alternate between", "alternating", "switch between")

# Combinations
MORNING_AND_EVENING_PATTERNS = ("morning and evening", "am and pm", "twice daily (morning and evening)")
WITH_MEALS_PATTERNS = ("with meals", "with food", "after meals", "before meals")
AS_NEEDED_PATTERNS = ("as needed", "prn", "when needed", "if needed")

CYCLICAL_PATTERN_GROUPS = (
    EVERY_OTHER_DAY_PATTERNS,
    EVERY_THREE_DAYS_PATTERNS,
    WEEKLY_PATTERNS,
    MONTHLY_PATTERNS,
)

# Single-drug protocol: one capsule in the morning, two in the evening.
TACROLIMUS = "tacrolimus"
TACROLIMUS_DOSAGE_BY_SLOT: Dict[str, str] = {
    MORNING: "1mg Cap (1 capsule)",
    EVENING: "1mg Cap (2 capsules)",
}

ALTERNATING_DOSE_RE = re.compile(r"alternate between (\d+) table.*?and (\d+) table")
CLOCK_HOUR_RE = re.compile(r"^\s*(\d{1,2})(?::(\d{1,2}))?")


def matches_patterns(text: Optional[str], patterns: Iterable[str]) -> bool:
    if not text or not patterns:
        return False
    normalized = text.lower().strip()
    return any(pattern.lower() in normalized for pattern in patterns)


def _field(medication: Any, name: str, default: Any = None) -> Any:
    """Read a field from a Medication model or a plain dict."""
    if medication is None:
        return default
    if isinstance(medication, dict):
        value = medication.get(name, default)
    else:
        value = getattr(medication, name, default)
    return default if value is None else value


def to_date(value: Any) -> Optional[date]:
    """Coerce a date, datetime or ISO string to a calendar date; None if unparseable."""
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if not isinstance(value, str):
        return None
    raw = value.strip()
    if not raw:
        return None
    if raw.endswith("Z"):
        raw = raw[:-1] + "+00:00"
    try:
        return datetime.fromisoformat(raw).date()
    except ValueError:
        pass
    try:
        return date.fromisoformat(raw[:10])
    except ValueError:
        return None


def format_time_for_display(time_string: Optional[str]) -> str:
    """'14:30' -> '2:30 PM'. Falls back to 8:00 AM when the value can't be read."""
    if not time_string:
        return DEFAULT_DISPLAY_TIME
    match = CLOCK_HOUR_RE.match(str(time_string))
    if not match:
        logger.warning("Unreadable specific time %r, using %s", time_string, DEFAULT_DISPLAY_TIME)
        return DEFAULT_DISPLAY_TIME
    hour = int(match.group(1))
    minute = int(match.group(2) or 0)
    if hour > 23 or minute > 59:
        logger.warning("Out of range specific time %r, using %s", time_string, DEFAULT_DISPLAY_TIME)
        return DEFAULT_DISPLAY_TIME
    period = "PM" if hour >= 12 else "AM"
    display_hour = 12 if hour == 0 else hour - 12 if hour > 12 else hour
    return f"{display_hour}:{minute:02d} {period}"


def slot_for_clock_time(time_string: Optional[str]) -> Optional[str]:
    if not time_string:
        return None
    match = CLOCK_HOUR_RE.match(str(time_string))
    if not match:
        return None
    hour = int(match.group(1))
    if 5 <= hour < 12:
        return MORNING
    if 12 <= hour < 17:
        return AFTERNOON
    return EVENING


class ScheduleParser:
    """Deterministic schedule parser over the module-level pattern tables."""

    time_slots = TIME_SLOTS

    def parse_schedule(self, medications: List[Any], target_date: Any) -> Dict[str, List[Dict[str, Any]]]:
        """Build the morning/afternoon/evening schedule for one calendar date."""
        schedule: Dict[str, List[Dict[str, Any]]] = {slot: [] for slot in DISPLAY_SLOTS}
        target = to_date(target_date)
        if target is None:
            logger.warning("Unreadable target date %r, returning empty schedule", target_date)
            return schedule

        for med in medications or []:
            name = _field(med, "name", UNKNOWN)
            schedule_text = _field(med, "schedule", "")
            created_at = _field(med, "created_at")
            days_since_start = self.calculate_days_since_start(created_at, target)

            if days_since_start < 0:
                logger.debug("Skipping %s: not started on %s", name, target)
                continue
            if not self.should_take_on_date(schedule_text, days_since_start, target, created_at):
                logger.debug("Skipping %s: not scheduled on %s", name, target)
                continue

            parsed = self.parse_medication_schedule(med, days_since_start)
            self.add_medication_to_schedule(schedule, parsed)

        return schedule

    def calculate_days_since_start(self, created_at: Any, target_date: Any) -> int:
        start = to_date(created_at)
        target = to_date(target_date)
        if start is None or target is None:
            return 0
        return (target - start).days

    def should_take_on_date(self, schedule: Optional[str], days_since_start: int, target_date: Any, created_at: Any) -> bool:
        """Cyclical schedules only: is a dose due on target_date? Daily text is always True."""
        text = (schedule or "").lower()

        if matches_patterns(text, EVERY_OTHER_DAY_PATTERNS):
            return days_since_start % 2 == 0
        if matches_patterns(text, EVERY_THREE_DAYS_PATTERNS):
            return days_since_start % 3 == 0

        if matches_patterns(text, WEEKLY_PATTERNS):
            start, target = to_date(created_at), to_date(target_date)
            if start is None or target is None:
                return False
            return target.weekday() == start.weekday()

        if matches_patterns(text, MONTHLY_PATTERNS):
            start, target = to_date(created_at), to_date(target_date)
            if start is None or target is None:
                return False
            return target.day == start.day

        return True

    def parse_medication_schedule(self, medication: Any, days_since_start: int) -> Dict[str, Any]:
        schedule_text = _field(medication, "schedule")
        if not schedule_text:
            return {
                "medication": medication or {},
                "time_slots": [],
                "dosage": _field(medication, "dosage", UNKNOWN),
                "days_since_start": days_since_start,
            }
        return {
            "medication": medication,
            "time_slots": self.determine_time_slots(schedule_text),
            "dosage": _field(medication, "dosage", UNKNOWN),
            "days_since_start": days_since_start,
        }

    def determine_time_slots(self, schedule_text: Optional[str]) -> List[str]:
        """Map schedule text to its time slots. First matching rule wins."""
        text = (schedule_text or "").lower().strip()

        if matches_patterns(text, MORNING_AND_EVENING_PATTERNS):
            return [MORNING, EVENING]

        # Multi-dose frequencies before the once-daily check ("twice daily" contains "daily").
        if matches_patterns(text, THREE_TIMES_DAILY_PATTERNS):
            return [MORNING, AFTERNOON, EVENING]
        if matches_patterns(text, FOUR_TIMES_DAILY_PATTERNS):
            return [MORNING, AFTERNOON, EVENING, NIGHT]
        if matches_patterns(text, TWICE_DAILY_PATTERNS):
            return [MORNING, EVENING]

        if matches_patterns(text, ONCE_DAILY_PATTERNS):
            if matches_patterns(text, EVENING_PATTERNS):
                return [EVENING]
            if matches_patterns(text, AFTERNOON_PATTERNS):
                return [AFTERNOON]
            return [MORNING]

        slots: List[str] = []
        if matches_patterns(text, MORNING_PATTERNS):
            slots.append(MORNING)
        if matches_patterns(text, AFTERNOON_PATTERNS):
            slots.append(AFTERNOON)
        if matches_patterns(text, EVENING_PATTERNS):
            slots.append(EVENING)
        if slots:
            return slots

        if any(matches_patterns(text, group) for group in CYCLICAL_PATTERN_GROUPS):
            return [MORNING]

        if matches_patterns(text, ALTERNATING_PATTERNS):
            return [AFTERNOON]

        return [AFTERNOON]

    def add_medication_to_schedule(self, schedule: Dict[str, List[Dict[str, Any]]], parsed: Dict[str, Any]) -> None:
        medication = parsed.get("medication")
        time_slots = parsed.get("time_slots")
        if not isinstance(time_slots, list):
            return

        for slot in time_slots:
            if slot not in DISPLAY_SLOTS:
                continue
            entry = {
                "id": _field(medication, "id"),
                "name": _field(medication, "name", UNKNOWN),
                "original_schedule": _field(medication, "schedule", UNKNOWN),
                "dosage": self.get_dosage_for_time(medication, slot, parsed.get("days_since_start", 0)),
                "time": TIME_SLOTS[slot]["default_time"],
            }
            schedule[slot].append(entry)
            logger.debug("Added %s to %s at %s", entry["name"], slot, entry["time"])

    def get_dosage_for_time(self, medication: Any, time_slot: str, days_since_start: int = 0) -> str:
        dosage = _field(medication, "dosage", UNKNOWN)
        schedule_text = _field(medication, "schedule")
        if not schedule_text:
            return dosage

        name = str(_field(medication, "name", "")).lower()
        if TACROLIMUS in name and time_slot in TACROLIMUS_DOSAGE_BY_SLOT:
            return TACROLIMUS_DOSAGE_BY_SLOT[time_slot]

        if matches_patterns(schedule_text, ALTERNATING_PATTERNS):
            return self.calculate_alternating_dosage(medication, days_since_start)

        return dosage

    def calculate_alternating_dosage(self, medication: Any, days_since_start: int) -> str:
        dosage = _field(medication, "dosage", UNKNOWN)
        schedule_text = _field(medication, "schedule")
        if not schedule_text:
            return f"{dosage} (alternating)"

        match = ALTERNATING_DOSE_RE.search(schedule_text.lower())
        if not match:
            return f"{dosage} (alternating)"

        first_dose, second_dose = int(match.group(1)), int(match.group(2))
        current = first_dose if days_since_start % 2 == 0 else second_dose
        return f"{dosage} ({current} tablet{'s' if current > 1 else ''})"

    def apply_time_specific_overrides(self, schedule: Dict[str, List[Dict[str, Any]]], medications: List[Any]) -> Dict[str, List[Dict[str, Any]]]:
        """Move medications with a fixed clock time into the slot that time falls in."""
        timed = [
            med for med in medications or []
            if _field(med, "use_specific_time", False) and _field(med, "specific_time")
        ]
        modified = {slot: list(schedule.get(slot, [])) for slot in DISPLAY_SLOTS}
        if not timed:
            return modified

        for med in timed:
            med_id = _field(med, "id")
            name = _field(med, "name")
            specific_time = _field(med, "specific_time")
            target_slot = slot_for_clock_time(specific_time)
            if target_slot is None:
                logger.warning("Ignoring unreadable specific time %r for %s", specific_time, name)
                continue

            for slot in DISPLAY_SLOTS:
                modified[slot] = [
                    entry for entry in modified[slot]
                    if entry.get("id") != med_id and entry.get("name") != name
                ]

            modified[target_slot].append({
                "id": med_id,
                "name": name,
                "original_schedule": _field(med, "schedule"),
                "dosage": _field(med, "dosage"),
                "use_specific_time": True,
                "specific_time": specific_time,
                "time": format_time_for_display(specific_time),
            })
            logger.debug("Pinned %s to %s at %s", name, target_slot, specific_time)

        return modified

    def get_supported_patterns(self) -> Dict[str, Dict[str, List[str]]]:
        return {
            "frequency_patterns": {
                "Once Daily": list(ONCE_DAILY_PATTERNS),
                "Twice Daily": list(TWICE_DAILY_PATTERNS),
                "Three Times Daily": list(THREE_TIMES_DAILY_PATTERNS),
                "Four Times Daily": list(FOUR_TIMES_DAILY_PATTERNS),
            },
            "time_specific_patterns": {
                "Morning": list(MORNING_PATTERNS),
                "Afternoon": list(AFTERNOON_PATTERNS),
                "Evening": list(EVENING_PATTERNS),
            },
            "complex_patterns": {
                "Every Other Day": list(EVERY_OTHER_DAY_PATTERNS),
                "Every 3 Days": list(EVERY_THREE_DAYS_PATTERNS),
                "Weekly": list(WEEKLY_PATTERNS),
                "Monthly": list(MONTHLY_PATTERNS),
                "Alternating": list(ALTERNATING_PATTERNS),
            },
            "combination_patterns": {
                "Morning and Evening": list(MORNING_AND_EVENING_PATTERNS),
                "With Meals": list(WITH_MEALS_PATTERNS),
                "As Needed": list(AS_NEEDED_PATTERNS),
            },
        }


schedule_parser = ScheduleParser()
