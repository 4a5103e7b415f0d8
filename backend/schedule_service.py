"""
schedule_service.py
-------------------
Assembles a user's daily morning/afternoon/evening schedule from the
medications stored in MongoDB.

Past dates are built from the medications that existed on that date and then
served from the cache. Today and future dates are derived from a per-user
template built from the current medication list, re-checking each cyclical
medication against the target date.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import date, datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from models import Medication
from schedule_cache import ScheduleCache, schedule_cache, schedule_key
from schedule_parser import DISPLAY_SLOTS, ScheduleParser, schedule_parser, to_date

logger = logging.getLogger(__name__)

MAX_MEDICATIONS = 1000


def _as_utc_datetime(value: Any) -> datetime:
    """Sort key for created_at values that may be strings, dates or datetimes."""
    if isinstance(value, str):
        raw = value.strip()
        if raw.endswith("Z"):
            raw = raw[:-1] + "+00:00"
        try:
            value = datetime.fromisoformat(raw)
        except ValueError:
            return datetime.min.replace(tzinfo=timezone.utc)
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)
    return datetime.min.replace(tzinfo=timezone.utc)


def _name_key(medication: Medication) -> str:
    return (medication.name or "").strip().lower()


def _snapshot(medication: Medication) -> Dict[str, Any]:
    created_at = medication.created_at
    return {
        "id": medication.id,
        "name": medication.name,
        "dosage": medication.dosage,
        "schedule": medication.schedule,
        "specific_time": medication.specific_time,
        "use_specific_time": medication.use_specific_time,
        "created_at": created_at.isoformat() if isinstance(created_at, datetime) else created_at,
    }


def _newest_per_name(medications: List[Medication]) -> List[Medication]:
    groups: Dict[str, List[Medication]] = {}
    for med in medications:
        groups.setdefault(_name_key(med), []).append(med)

    newest = [
        max(group, key=lambda med: _as_utc_datetime(med.created_at))
        for group in groups.values()
    ]
    newest.sort(key=lambda med: _as_utc_datetime(med.created_at), reverse=True)
    return newest


class PersistentScheduleService:
    def __init__(
        self,
        db: Any,
        cache: Optional[ScheduleCache] = None,
        parser: Optional[ScheduleParser] = None,
        today: Optional[Callable[[], date]] = None,
    ) -> None:
        self.db = db
        self.cache = cache if cache is not None else schedule_cache
        self.parser = parser or schedule_parser
        self._today = today or date.today
        self._pending: Dict[str, asyncio.Future] = {}

    async def _load_medications(self, user_id: str) -> List[Medication]:
        docs = await self.db.medications.find({"user_id": user_id}).to_list(MAX_MEDICATIONS)
        return [Medication(**doc) for doc in docs]

    async def get_current_medications(self, user_id: str) -> List[Medication]:
        """Newest entry of every medication name, so refill chains count once."""
        medications = _newest_per_name(await self._load_medications(user_id))
        logger.info("Retrieved %d consolidated medications for user %s", len(medications), user_id)
        return medications

    async def get_medications_for_date(self, user_id: str, target_date: date) -> List[Medication]:
        """Per medication name, the newest entry created on or before target_date."""
        eligible = []
        for med in await self._load_medications(user_id):
            created = to_date(med.created_at)
            if created is not None and created <= target_date:
                eligible.append(med)
        medications = _newest_per_name(eligible)
        logger.info("Retrieved %d active medications for %s (user %s)", len(medications), target_date, user_id)
        return medications

    async def get_or_create_schedule(self, user_id: str, date_str: str) -> Dict[str, Any]:
        target = to_date(date_str)
        if target is None:
            raise ValueError(f"Invalid schedule date: {date_str}")
        date_str = target.isoformat()
        key = schedule_key(user_id, date_str)
        version = self.cache.get_user_version(user_id)

        if target < self._today():
            cached = self.cache.get_schedule(key)
            if cached is not None:
                logger.debug("Serving cached historical schedule %s", key)
                return cached
            schedule = await self._build_historical_schedule(user_id, target)
            self._store_schedule(key, schedule, user_id, version)
            return schedule

        template = self.cache.get_template(user_id)
        if template is None:
            template = await self._get_or_create_template(user_id)
        schedule = self.derive_schedule_from_template(template, target)
        self._store_schedule(key, schedule, user_id, version)
        return schedule

    def _store_schedule(self, key: str, schedule: Dict[str, Any], user_id: str, version: int) -> None:
        # Built from data read before an invalidation; serve it but do not cache it.
        if self.cache.get_user_version(user_id) != version:
            logger.info("Medications for user %s changed while building %s, not caching", user_id, key)
            return
        self.cache.set_schedule(key, schedule, user_id)

    async def _build_historical_schedule(self, user_id: str, target: date) -> Dict[str, Any]:
        medications = await self.get_medications_for_date(user_id, target)
        schedule = self.parser.parse_schedule(medications, target)
        schedule = self.parser.apply_time_specific_overrides(schedule, medications)
        schedule.update({
            "date": target.isoformat(),
            "user_id": user_id,
            "is_historical": True,
            "is_empty": not medications,
            "created_at": datetime.now(timezone.utc).isoformat(),
            "medications_snapshot": [_snapshot(med) for med in medications],
        })
        return schedule

    async def _get_or_create_template(self, user_id: str) -> Dict[str, Any]:
        key = f"template_{user_id}"
        pending = self._pending.get(key)
        if pending is not None:
            logger.debug("Template creation for user %s in progress, waiting", user_id)
            return await pending

        task = asyncio.ensure_future(self.create_template(user_id))
        self._pending[key] = task
        try:
            return await task
        finally:
            self._pending.pop(key, None)

    async def create_template(self, user_id: str) -> Dict[str, Any]:
        """Slot placement for every current medication, independent of any one date."""
        version = self.cache.get_user_version(user_id)
        medications = await self.get_current_medications(user_id)
        template: Dict[str, Any] = {slot: [] for slot in DISPLAY_SLOTS}
        for med in medications:
            parsed = self.parser.parse_medication_schedule(med, 0)
            self.parser.add_medication_to_schedule(template, parsed)
        template = self.parser.apply_time_specific_overrides(template, medications)
        template.update({
            "date": self._today().isoformat(),
            "user_id": user_id,
            "is_template": True,
            "is_empty": not medications,
            "created_at": datetime.now(timezone.utc).isoformat(),
            "medications_snapshot": [_snapshot(med) for med in medications],
        })
        if self.cache.get_user_version(user_id) != version:
            logger.info("Medications for user %s changed while building template, not caching", user_id)
            return template
        self.cache.set_template(user_id, template)
        logger.info("Template created and cached for user %s (%d medications)", user_id, len(medications))
        return template

    def derive_schedule_from_template(self, template: Dict[str, Any], target_date: date) -> Dict[str, Any]:
        snapshots = {snap["id"]: snap for snap in template.get("medications_snapshot", [])}
        derived: Dict[str, Any] = {slot: [] for slot in DISPLAY_SLOTS}
        included_ids = set()

        for slot in DISPLAY_SLOTS:
            for entry in template.get(slot, []):
                snapshot = snapshots.get(entry.get("id"))
                if snapshot is None:
                    derived[slot].append(dict(entry))
                    continue

                days_since_start = self.parser.calculate_days_since_start(snapshot["created_at"], target_date)
                if days_since_start < 0:
                    continue
                if not self.parser.should_take_on_date(
                    snapshot["schedule"], days_since_start, target_date, snapshot["created_at"]
                ):
                    continue

                adjusted = dict(entry)
                if not entry.get("use_specific_time"):
                    adjusted["dosage"] = self.parser.get_dosage_for_time(snapshot, slot, days_since_start)
                derived[slot].append(adjusted)
                included_ids.add(snapshot["id"])

        timed = [snap for snap_id, snap in snapshots.items() if snap_id in included_ids]
        derived = self.parser.apply_time_specific_overrides(derived, timed)
        derived.update({
            "date": target_date.isoformat(),
            "user_id": template.get("user_id"),
            "is_historical": False,
            "created_at": datetime.now(timezone.utc).isoformat(),
            "medications_snapshot": template.get("medications_snapshot", []),
        })
        return derived

    def have_medications_changed(self, current: List[Medication], snapshot: List[Dict[str, Any]]) -> bool:
        if len(current) != len(snapshot):
            logger.info("Medication count changed: %d -> %d", len(snapshot), len(current))
            return True

        def normalize(value: Optional[str]) -> str:
            return value.strip().lower() if value else ""

        previous = {snap["id"]: snap for snap in snapshot}
        for med in current:
            snap = previous.get(med.id)
            if snap is None:
                logger.info("Medication added: %s (%s)", med.name, med.id)
                return True
            if normalize(med.name) != normalize(snap.get("name")) or normalize(med.schedule) != normalize(snap.get("schedule")):
                logger.info("Medication modified: %s -> %s (%s)", snap.get("name"), med.name, med.id)
                return True
        return False

    def get_schedule_info(self, user_id: str, date_str: str) -> Dict[str, Any]:
        schedule = self.cache.get_schedule(schedule_key(user_id, date_str))
        if not schedule:
            return {"exists": False, "message": "No persistent schedule exists for this date"}
        snapshot = schedule.get("medications_snapshot", [])
        return {
            "exists": True,
            "schedule_created_at": schedule.get("created_at"),
            "medications_snapshot": snapshot,
            "total_medications": len(snapshot),
            "is_stale": self.cache.is_schedule_stale(user_id, schedule_key(user_id, date_str)),
        }

    async def force_refresh_schedule(self, user_id: str, date_str: str) -> Dict[str, Any]:
        if self.cache.remove_schedule(schedule_key(user_id, date_str)):
            logger.info("Removed cached schedule for %s (user %s)", date_str, user_id)
        self.cache.remove_template(user_id)
        schedule = await self.get_or_create_schedule(user_id, date_str)
        return {
            "schedule_created_at": schedule.get("created_at"),
            "total_medications": len(schedule.get("medications_snapshot", [])),
        }

    def invalidate_user(self, user_id: str) -> None:
        self.cache.clear_user(user_id)

    def get_cache_stats(self) -> Dict[str, Any]:
        return self.cache.get_stats()
