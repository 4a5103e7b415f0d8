"""In-memory cache for assembled daily schedules and per-user templates.

Keys are ``"<user_id>_<YYYY-MM-DD>"`` for schedules and the user id for
templates. Callers must call ``clear_user`` whenever a user's medications
change or a dose is logged.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)


def schedule_key(user_id: Any, date_str: str) -> str:
    return f"{user_id}_{date_str}"


class ScheduleCache:
    def __init__(self) -> None:
        self.schedules: Dict[str, Dict[str, Any]] = {}
        self.templates: Dict[str, Dict[str, Any]] = {}
        self.user_versions: Dict[str, int] = {}

    def has_schedule(self, key: str) -> bool:
        return str(key) in self.schedules

    def get_schedule(self, key: str) -> Optional[Dict[str, Any]]:
        return self.schedules.get(str(key))

    def set_schedule(self, key: str, schedule: Dict[str, Any], user_id: Any = None) -> None:
        """Store a schedule; stamping it with the user's cache version when user_id is given."""
        if user_id is not None and schedule is not None:
            schedule["cache_version"] = self.get_user_version(user_id)
        self.schedules[str(key)] = schedule

    def remove_schedule(self, key: str) -> bool:
        return self.schedules.pop(str(key), None) is not None

    def has_template(self, user_id: Any) -> bool:
        return str(user_id) in self.templates

    def get_template(self, user_id: Any) -> Optional[Dict[str, Any]]:
        return self.templates.get(str(user_id))

    def set_template(self, user_id: Any, template: Dict[str, Any]) -> None:
        self.templates[str(user_id)] = template

    def remove_template(self, user_id: Any) -> bool:
        return self.templates.pop(str(user_id), None) is not None

    def get_user_version(self, user_id: Any) -> int:
        return self.user_versions.get(str(user_id), 0)

    def increment_user_version(self, user_id: Any) -> int:
        key = str(user_id)
        self.user_versions[key] = self.user_versions.get(key, 0) + 1
        return self.user_versions[key]

    def is_schedule_stale(self, user_id: Any, key: str) -> bool:
        schedule = self.schedules.get(str(key))
        if not schedule or "cache_version" not in schedule:
            return False
        return self.get_user_version(user_id) > schedule["cache_version"]

    def clear_user(self, user_id: Any) -> None:
        owner = str(user_id)
        for key in [k for k in self.schedules if k.rsplit("_", 1)[0] == owner]:
            del self.schedules[key]
        self.templates.pop(str(user_id), None)
        version = self.increment_user_version(user_id)
        logger.info("Cleared schedule cache for user %s (version %d)", user_id, version)

    def get_stats(self) -> Dict[str, Any]:
        return {
            "schedules": len(self.schedules),
            "templates": len(self.templates),
            "user_versions": dict(self.user_versions),
            "total_keys": len(self.schedules) + len(self.templates),
        }

    def clear(self) -> None:
        self.schedules.clear()
        self.templates.clear()
        self.user_versions.clear()


schedule_cache = ScheduleCache()
