from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union
import uuid

from pydantic import BaseModel, Field


class Medication(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    user_id: Optional[str] = None
    name: str
    dosage: Optional[str] = None
    schedule: str = "once daily"  # free text, e.g. "twice daily", "every other day"
    use_specific_time: bool = False
    specific_time: Optional[str] = None  # HH:MM, overrides the pattern-derived slot
    refill_of_id: Optional[str] = None  # previous entry in a refill chain
    # Refill fields (all optional)
    date_filled: Optional[str] = None  # ISO date string
    quantity: Optional[int] = None
    days_supply: Optional[int] = None
    refills_remaining: Optional[int] = None
    refill_expiry_date: Optional[str] = None
    pharmacy_name: Optional[str] = None
    created_at: Union[datetime, str] = Field(default_factory=lambda: datetime.now(timezone.utc))


class MedicationCreate(BaseModel):
    user_id: Optional[str] = None
    name: str
    dosage: Optional[str] = None
    schedule: str = "once daily"
    use_specific_time: bool = False
    specific_time: Optional[str] = None
    refill_of_id: Optional[str] = None
    date_filled: Optional[str] = None
    quantity: Optional[int] = None
    days_supply: Optional[int] = None
    refills_remaining: Optional[int] = None
    refill_expiry_date: Optional[str] = None
    pharmacy_name: Optional[str] = None
    created_at: Optional[str] = None  # regimen start; defaults to now


class MedicationUpdate(BaseModel):
    name: Optional[str] = None
    dosage: Optional[str] = None
    schedule: Optional[str] = None
    use_specific_time: Optional[bool] = None
    specific_time: Optional[str] = None
    date_filled: Optional[str] = None
    quantity: Optional[int] = None
    days_supply: Optional[int] = None
    refills_remaining: Optional[int] = None
    refill_expiry_date: Optional[str] = None
    pharmacy_name: Optional[str] = None


class SchedulePreviewRequest(BaseModel):
    name: Optional[str] = None
    dosage: Optional[str] = None
    schedule: str


class SchedulePreview(BaseModel):
    schedule: str
    time_slots: List[str]
    consumption_rate: float
    dosage_by_slot: Dict[str, str]


class ScheduleEntry(BaseModel):
    id: Optional[str] = None
    name: str
    original_schedule: Optional[str] = None
    dosage: Optional[str] = None
    time: str
    use_specific_time: bool = False
    specific_time: Optional[str] = None
    taken: bool = False
    taken_at: Optional[str] = None


class DailySchedule(BaseModel):
    date: str
    user_id: Optional[str] = None
    morning: List[ScheduleEntry] = []
    afternoon: List[ScheduleEntry] = []
    evening: List[ScheduleEntry] = []
    is_historical: bool = False


class DoseLogCreate(BaseModel):
    user_id: Optional[str] = None
    medication_id: str
    dose_type: str  # morning / afternoon / evening
    taken_at: Optional[datetime] = None
    notes: Optional[str] = None


class DoseLog(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    user_id: Optional[str] = None
    medication_id: str
    dose_type: str
    taken_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    notes: Optional[str] = None


class RefillReminder(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    user_id: Optional[str] = None
    medication_id: str
    reminder_date: str
    reminder_type: str
    message: str
    priority: Optional[str] = None
    status: str = "pending"


class ReminderStatusUpdate(BaseModel):
    status: str  # pending / sent / dismissed / completed


class LabelExtractionRequest(BaseModel):
    text: Optional[str] = None
    image_base64: Optional[str] = None
    user_id: Optional[str] = None


class LabelExtractionResult(BaseModel):
    medication: Dict[str, Any]
    source: str
    processing_notes: str
