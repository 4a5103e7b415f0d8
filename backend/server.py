from fastapi import FastAPI, APIRouter, HTTPException
from dotenv import load_dotenv
from starlette.middleware.cors import CORSMiddleware
from motor.motor_asyncio import AsyncIOMotorClient
import os
import logging
from pathlib import Path
from pydantic import BaseModel
from typing import List, Optional, Dict, Any
from datetime import datetime, date, time, timezone

from models import (
    DailySchedule,
    DoseLog,
    DoseLogCreate,
    LabelExtractionRequest,
    LabelExtractionResult,
    Medication,
    MedicationCreate,
    MedicationUpdate,
    RefillReminder,
    ReminderStatusUpdate,
    ScheduleEntry,
    SchedulePreview,
    SchedulePreviewRequest,
)
from schedule_parser import DISPLAY_SLOTS, schedule_parser, to_date
from refill_calculator import DEFAULT_DAYS_SUPPLY, RefillCalculationError, RefillCalculator
from schedule_cache import schedule_cache
from schedule_service import PersistentScheduleService
from label_extraction import extract_refill_fields

ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

REFILL_FIELDS = ("date_filled", "quantity", "days_supply", "refills_remaining")
REMINDER_STATUSES = {"pending", "sent", "dismissed", "completed"}
CONSUMPTION_WINDOW_DAYS = int(os.getenv('CONSUMPTION_WINDOW_DAYS', '30'))

# MongoDB connection
MONGO_URL = os.getenv('MONGO_URL')
DB_NAME = os.getenv('DB_NAME', 'medication_tracker')

client: Optional[AsyncIOMotorClient] = None
db = None

refill_calculator = RefillCalculator(schedule_parser)
schedule_service = PersistentScheduleService(None, schedule_cache, schedule_parser)

# Create the main app without a prefix
app = FastAPI()

# Create a router with the /api prefix
api_router = APIRouter(prefix="/api")

logger = logging.getLogger(__name__)

# Helper functions
def prepare_for_mongo(data):
    """Convert date/time objects to strings for MongoDB storage"""
    if isinstance(data, dict):
        for key, value in data.items():
            if isinstance(value, date):
                data[key] = value.isoformat()
            elif isinstance(value, time):
                data[key] = value.strftime('%H:%M:%S')
            elif isinstance(value, list):
                data[key] = [prepare_for_mongo(item) if isinstance(item, dict) else item for item in value]
    return data

def parse_from_mongo(item):
    """Drop Mongo's internal id so documents load straight into the models"""
    if isinstance(item, dict):
        item.pop('_id', None)
    return item

def require_db():
    if db is None:
        raise HTTPException(status_code=503, detail="Database not available")
    return db

async def load_medication(medication_id: str, user_id: Optional[str] = None) -> Medication:
    query: Dict[str, Any] = {"id": medication_id}
    if user_id:
        query["user_id"] = user_id
    doc = await require_db().medications.find_one(query)
    if not doc:
        raise HTTPException(status_code=404, detail="Medication not found")
    return Medication(**parse_from_mongo(doc))

def check_refill_data(data: Dict[str, Any]) -> None:
    refill_data = {key: data.get(key) for key in REFILL_FIELDS}
    validation = refill_calculator.validate_refill_data(refill_data)
    if not validation["is_valid"]:
        raise HTTPException(status_code=400, detail=validation["errors"])

def refill_summary(medication: Medication) -> Dict[str, Any]:
    return {
        "id": medication.id,
        "name": medication.name,
        "schedule": medication.schedule,
        "date_filled": medication.date_filled,
        "quantity": medication.quantity,
        "days_supply": medication.days_supply,
        "refills_remaining": medication.refills_remaining,
        "refill_expiry_date": medication.refill_expiry_date,
    }


class CacheClearRequest(BaseModel):
    user_id: Optional[str] = None


class ScheduleRefreshRequest(BaseModel):
    user_id: Optional[str] = None
    date: str


# Routes

@api_router.get("/")
async def root():
    return {"message": "Medication Schedule & Refill API"}

@api_router.get("/health")
async def health():
    status = {
        "status": "ok",
        "db": "connected" if db is not None else "disabled",
        "time": datetime.now(timezone.utc).isoformat(),
    }
    return status

@api_router.get("/medications", response_model=List[Medication])
async def get_medications(user_id: Optional[str] = None):
    """Get all stored medications; optionally filter by user_id"""
    query: Dict[str, Any] = {}
    if user_id:
        query["user_id"] = user_id

    if db is None:
        return []
    medications = await db.medications.find(query).to_list(1000)
    return [Medication(**parse_from_mongo(med)) for med in medications]

@api_router.get("/medications/schedule", response_model=DailySchedule)
async def get_schedule(date: str, user_id: Optional[str] = None):
    """Morning/afternoon/evening schedule for one date, with taken flags from the dose log"""
    database = require_db()
    target = to_date(date)
    if target is None:
        raise HTTPException(status_code=400, detail=f"Invalid date: {date}")

    schedule_service.db = database
    schedule = await schedule_service.get_or_create_schedule(user_id, target.isoformat())

    dose_logs = await database.dose_logs.find({"user_id": user_id}).to_list(1000)
    taken: Dict[tuple, str] = {}
    for dose in dose_logs:
        taken_at = dose.get("taken_at")
        if to_date(taken_at) == target:
            taken[(dose.get("medication_id"), dose.get("dose_type"))] = taken_at

    slots: Dict[str, List[ScheduleEntry]] = {}
    for slot in DISPLAY_SLOTS:
        entries = []
        for entry in schedule.get(slot, []):
            taken_at = taken.get((entry.get("id"), slot))
            entries.append(ScheduleEntry(**entry, taken=taken_at is not None, taken_at=taken_at))
        slots[slot] = entries

    return DailySchedule(
        date=target.isoformat(),
        user_id=user_id,
        is_historical=bool(schedule.get("is_historical")),
        **slots,
    )

@api_router.get("/medications/{medication_id}", response_model=Medication)
async def get_medication(medication_id: str):
    """Get a specific medication by ID"""
    return await load_medication(medication_id)

@api_router.post("/medications", response_model=Medication)
async def create_medication(medication: MedicationCreate):
    """Manually create a medication"""
    database = require_db()
    data = medication.dict()
    check_refill_data(data)
    if not data.get("created_at"):
        data.pop("created_at", None)
    med_obj = Medication(**data)
    med_dict = prepare_for_mongo(med_obj.dict())
    await database.medications.insert_one(med_dict)
    schedule_cache.clear_user(med_obj.user_id)
    return med_obj

@api_router.put("/medications/{medication_id}", response_model=Medication)
async def update_medication(medication_id: str, update: MedicationUpdate):
    """Update schedule, dosage or refill fields of a medication"""
    database = require_db()
    existing = await load_medication(medication_id)
    changes = update.dict(exclude_unset=True)
    merged = {**existing.dict(), **changes}
    check_refill_data(merged)
    if changes:
        await database.medications.update_one({"id": medication_id}, {"$set": prepare_for_mongo(changes)})
    schedule_cache.clear_user(existing.user_id)
    return Medication(**merged)

@api_router.delete("/medications/{medication_id}")
async def delete_medication(medication_id: str):
    """Delete a medication"""
    database = require_db()
    existing = await load_medication(medication_id)
    result = await database.medications.delete_one({"id": medication_id})
    if result.deleted_count == 0:
        raise HTTPException(status_code=404, detail="Medication not found")
    schedule_cache.clear_user(existing.user_id)
    return {"message": "Medication deleted successfully"}

@api_router.post("/preview-medication", response_model=SchedulePreview)
async def preview_medication(request: SchedulePreviewRequest):
    """Show where a schedule lands without saving anything"""
    time_slots = schedule_parser.determine_time_slots(request.schedule)
    medication = {"name": request.name or "", "dosage": request.dosage, "schedule": request.schedule}
    return SchedulePreview(
        schedule=request.schedule,
        time_slots=time_slots,
        consumption_rate=refill_calculator.calculate_consumption_rate(request.schedule, CONSUMPTION_WINDOW_DAYS),
        dosage_by_slot={
            slot: schedule_parser.get_dosage_for_time(medication, slot, 0)
            for slot in time_slots if slot in DISPLAY_SLOTS
        },
    )

@api_router.post("/dose-log", response_model=DoseLog)
async def log_dose(request: DoseLogCreate):
    """Record a taken dose"""
    database = require_db()
    if request.dose_type not in DISPLAY_SLOTS:
        raise HTTPException(status_code=400, detail=f"dose_type must be one of {', '.join(DISPLAY_SLOTS)}")
    medication = await load_medication(request.medication_id)
    data = request.dict(exclude_none=True)
    dose = DoseLog(**{**data, "user_id": request.user_id or medication.user_id})
    await database.dose_logs.insert_one(prepare_for_mongo(dose.dict()))
    schedule_cache.clear_user(dose.user_id)
    logger.info("Logged %s dose of %s", dose.dose_type, medication.name)
    return dose

@api_router.get("/schedule/patterns")
async def get_schedule_patterns():
    return schedule_parser.get_supported_patterns()

@api_router.post("/force-refresh-schedule")
async def force_refresh_schedule(request: ScheduleRefreshRequest):
    schedule_service.db = require_db()
    try:
        return await schedule_service.force_refresh_schedule(request.user_id, request.date)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

@api_router.get("/cache/stats")
async def cache_stats():
    return schedule_service.get_cache_stats()

@api_router.post("/cache/clear")
async def clear_cache(request: CacheClearRequest):
    if request.user_id:
        schedule_service.invalidate_user(request.user_id)
        return {"message": f"Schedule cache cleared for user {request.user_id}"}
    schedule_cache.clear()
    return {"message": "Schedule cache cleared"}

@api_router.get("/medications/{medication_id}/refill-status")
async def get_refill_status(medication_id: str, user_id: Optional[str] = None):
    medication = await load_medication(medication_id, user_id)
    try:
        refill_status = refill_calculator.calculate_refill_status(medication)
    except RefillCalculationError as e:
        raise HTTPException(status_code=400, detail=str(e))

    comparison = None
    if medication.date_filled and medication.quantity and medication.days_supply:
        comparison = refill_calculator.compare_calculation_methods(
            medication.date_filled, medication.quantity, medication.schedule, medication.days_supply
        )

    return {
        "refill_status": refill_status,
        "calculation_comparison": comparison,
        "medication": refill_summary(medication),
    }

@api_router.get("/medications/{medication_id}/refill-calculation")
async def get_refill_calculation(medication_id: str, user_id: Optional[str] = None):
    medication = await load_medication(medication_id, user_id)
    if not medication.date_filled:
        raise HTTPException(status_code=400, detail="Medication has no refill data")

    days_supply = medication.days_supply or DEFAULT_DAYS_SUPPLY
    try:
        if not medication.quantity:
            refill_date = refill_calculator.calculate_refill_date(medication.date_filled, days_supply)
            return {
                "calculation": "unavailable",
                "message": "Schedule and quantity data required for enhanced calculation",
                "basic_calculation": {
                    "refill_date": refill_date.isoformat(),
                    "days_until": refill_calculator.days_until_refill(medication.date_filled, days_supply),
                },
                "medication": refill_summary(medication),
            }
        comparison = refill_calculator.compare_calculation_methods(
            medication.date_filled, medication.quantity, medication.schedule, days_supply
        )
    except RefillCalculationError as e:
        raise HTTPException(status_code=400, detail=str(e))

    return {"comparison": comparison, "medication": refill_summary(medication)}

@api_router.post("/medications/{medication_id}/refill-reminders", response_model=List[RefillReminder])
async def create_refill_reminders(medication_id: str, user_id: Optional[str] = None):
    """Generate reminders and upsert them, one per medication/date/type"""
    database = require_db()
    medication = await load_medication(medication_id, user_id)
    try:
        events = refill_calculator.generate_refill_reminders(medication)
    except RefillCalculationError as e:
        raise HTTPException(status_code=400, detail=str(e))

    owner = user_id or medication.user_id
    reminders: List[RefillReminder] = []
    for event in events:
        reminder = RefillReminder(user_id=owner, medication_id=medication.id, **event.to_dict())
        key = {
            "user_id": owner,
            "medication_id": medication.id,
            "reminder_date": reminder.reminder_date,
            "reminder_type": reminder.reminder_type,
        }
        await database.refill_reminders.update_one(
            key,
            {
                "$set": {"message": reminder.message, "priority": reminder.priority},
                "$setOnInsert": {"id": reminder.id, "status": reminder.status},
            },
            upsert=True,
        )
        stored = await database.refill_reminders.find_one(key)
        reminders.append(RefillReminder(**parse_from_mongo(stored)))
    logger.info("Stored %d refill reminders for %s", len(reminders), medication.name)
    return reminders

@api_router.get("/refill-reminders", response_model=List[RefillReminder])
async def get_refill_reminders(user_id: Optional[str] = None, status: Optional[str] = "pending"):
    database = require_db()
    query: Dict[str, Any] = {}
    if user_id:
        query["user_id"] = user_id
    if status:
        query["status"] = status
    reminders = await database.refill_reminders.find(query).sort("reminder_date", 1).to_list(1000)
    return [RefillReminder(**parse_from_mongo(reminder)) for reminder in reminders]

@api_router.put("/refill-reminders/{reminder_id}/status", response_model=RefillReminder)
async def update_reminder_status(reminder_id: str, update: ReminderStatusUpdate):
    database = require_db()
    if update.status not in REMINDER_STATUSES:
        raise HTTPException(status_code=400, detail=f"status must be one of {', '.join(sorted(REMINDER_STATUSES))}")
    result = await database.refill_reminders.update_one({"id": reminder_id}, {"$set": {"status": update.status}})
    if result.matched_count == 0:
        raise HTTPException(status_code=404, detail="Reminder not found")
    reminder = await database.refill_reminders.find_one({"id": reminder_id})
    return RefillReminder(**parse_from_mongo(reminder))

@api_router.get("/dashboard/refills")
async def refill_dashboard(user_id: Optional[str] = None):
    database = require_db()
    schedule_service.db = database
    medications = [
        med for med in await schedule_service.get_current_medications(user_id)
        if med.date_filled or med.quantity or med.days_supply
    ]
    try:
        summary = refill_calculator.get_refill_status_summary(medications)
        next_refill = refill_calculator.get_next_refill_due(medications)
    except RefillCalculationError as e:
        raise HTTPException(status_code=400, detail=str(e))

    today_iso = refill_calculator.today().isoformat()
    upcoming = await database.refill_reminders.find({
        "user_id": user_id,
        "status": "pending",
        "reminder_date": {"$gte": today_iso},
    }).sort("reminder_date", 1).to_list(10)

    return {
        "summary": {
            "total_medications": summary["total"],
            "low_supply_count": summary["low_supply"],
            "overdue_count": summary["expired"],
            "needs_refill_count": summary["needs_refill"],
            "no_data_count": summary["no_data"],
            "upcoming_reminders": len(upcoming),
        },
        "next_refill": next_refill,
        "medications": summary["medications"],
        "upcoming_reminders": [RefillReminder(**parse_from_mongo(r)) for r in upcoming],
    }

@api_router.post("/medications/extract-label", response_model=LabelExtractionResult)
async def extract_label(request: LabelExtractionRequest):
    """Read refill fields off a prescription label (text or photo)"""
    if not request.text and not request.image_base64:
        raise HTTPException(status_code=400, detail="Either text or image_base64 must be provided")

    max_image_mb = float(os.getenv('MAX_IMAGE_SIZE_MB', '5'))
    if request.image_base64:
        approx_size_mb = (len(request.image_base64) * 3) / (4 * 1024 * 1024)
        if approx_size_mb > max_image_mb:
            raise HTTPException(status_code=413, detail=f"Image too large (> {max_image_mb} MB)")

    result = await extract_refill_fields(request.text, request.image_base64)
    return LabelExtractionResult(**result)

# Include the router in the main app
app.include_router(api_router)

app.add_middleware(
    CORSMiddleware,
    allow_credentials=True,
    allow_origins=os.environ.get('CORS_ORIGINS', '*').split(','),
    allow_methods=["*"],
    allow_headers=["*"],
)

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)

@app.on_event("startup")
async def startup_db_client():
    global client, db
    if MONGO_URL:
        try:
            client = AsyncIOMotorClient(MONGO_URL)
            db = client[DB_NAME or 'medication_tracker']
            # Create helpful indexes
            await db.medications.create_index("id", unique=True)
            await db.medications.create_index([("user_id", 1)])
            await db.dose_logs.create_index([("user_id", 1)])
            await db.refill_reminders.create_index(
                [("user_id", 1), ("medication_id", 1), ("reminder_date", 1), ("reminder_type", 1)],
                unique=True,
            )
            schedule_service.db = db
            logging.info("MongoDB connected and indexes ensured")
        except Exception as e:
            logging.error(f"Failed to connect to MongoDB: {e}")
            client = None
            db = None
    else:
        logging.warning("MONGO_URL not set; database operations will be disabled")

@app.on_event("shutdown")
async def shutdown_db_client():
    if client:
        client.close()
