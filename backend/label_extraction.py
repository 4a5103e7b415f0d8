"""
label_extraction.py
-------------------
Pulls refill fields (fill date, quantity, days supply, refills left) off a
pharmacy label, from OCR text or a photo.

With OPENAI_API_KEY set the label goes to an OpenAI vision model with a JSON
response format. Without a key, or when the call fails, a regex parser reads
whatever text was supplied.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import re
from datetime import datetime
from typing import Any, Dict, Optional

from openai import OpenAI

from schedule_parser import (
    FOUR_TIMES_DAILY_PATTERNS,
    ONCE_DAILY_PATTERNS,
    THREE_TIMES_DAILY_PATTERNS,
    TWICE_DAILY_PATTERNS,
    EVERY_OTHER_DAY_PATTERNS,
    EVERY_THREE_DAYS_PATTERNS,
    WEEKLY_PATTERNS,
    MONTHLY_PATTERNS,
    AS_NEEDED_PATTERNS,
)

logger = logging.getLogger(__name__)

DEFAULT_OCR_MODEL = "gpt-4o"

LABEL_FIELDS = (
    "name", "dosage", "schedule", "date_filled", "quantity",
    "days_supply", "refills_remaining", "refill_expiry_date", "pharmacy_name",
)

SCHEDULE_PHRASES = (
    TWICE_DAILY_PATTERNS
    + THREE_TIMES_DAILY_PATTERNS
    + FOUR_TIMES_DAILY_PATTERNS
    + EVERY_OTHER_DAY_PATTERNS
    + EVERY_THREE_DAYS_PATTERNS
    + WEEKLY_PATTERNS
    + MONTHLY_PATTERNS
    + AS_NEEDED_PATTERNS
    + ONCE_DAILY_PATTERNS
)

NAME_RE = re.compile(r"^[ \t]*([A-Za-z][A-Za-z\-]+(?:[ \t]+[A-Za-z][A-Za-z\-]+)?)[ \t]+\d", re.MULTILINE)
DOSAGE_RE = re.compile(r"(\d+(?:\.\d+)?\s?(?:mg|mcg|ml|g|iu|units?))\b", re.IGNORECASE)
QUANTITY_RE = re.compile(r"\b(?:qty|quantity)\s*[:#]?\s*(\d+)", re.IGNORECASE)
DAYS_SUPPLY_RE = re.compile(r"\b(?:days?\s*supply|ds)\b\s*[:#]?\s*(\d+)|(\d+)\s*days?\s*supply", re.IGNORECASE)
REFILLS_RE = re.compile(r"\b(?:refills?)\s*(?:remaining|left)?\s*[:#]?\s*(\d+|none|no)\b", re.IGNORECASE)
FILLED_RE = re.compile(r"\b(?:date\s*filled|filled|fill\s*date)\s*[:#]?\s*([0-9/\-\.]+)", re.IGNORECASE)
EXPIRY_RE = re.compile(r"\b(?:refills?\s*expire|discard\s*after|use\s*by)\s*[:#]?\s*([0-9/\-\.]+)", re.IGNORECASE)
PHARMACY_RE = re.compile(r"^\s*([A-Za-z0-9'&\. ]+pharmacy)\b", re.IGNORECASE | re.MULTILINE)

DATE_FORMATS = ("%Y-%m-%d", "%m/%d/%Y", "%m/%d/%y", "%m-%d-%Y", "%d.%m.%Y")

SYSTEM_MESSAGE = """Role: You read pharmacy prescription labels and return the refill details as JSON.

Return ONLY this JSON object:
{
  "medication": {
    "name": "string",
    "dosage": "string (strength, e.g. 500mg)",
    "schedule": "string (directions, e.g. 'twice daily', 'every other day')",
    "date_filled": "YYYY-MM-DD or null",
    "quantity": integer or null,
    "days_supply": integer or null,
    "refills_remaining": integer or null,
    "refill_expiry_date": "YYYY-MM-DD or null",
    "pharmacy_name": "string or null"
  },
  "processing_notes": "short note on anything inferred or unreadable"
}

Rules:
- Dates must be ISO YYYY-MM-DD. If the year is ambiguous, use null.
- "No refills" means refills_remaining = 0.
- Never invent a value that is not printed on the label; use null instead.
"""


def parse_label_date(value: Any) -> Optional[str]:
    if not value or not isinstance(value, str):
        return None
    token = value.strip()
    for fmt in DATE_FORMATS:
        try:
            return datetime.strptime(token, fmt).date().isoformat()
        except ValueError:
            continue
    return None


def parse_label_int(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, str):
        match = re.search(r"\d+", value)
        if not match:
            return None
        value = match.group(0)
    try:
        number = int(value)
    except (TypeError, ValueError):
        return None
    return number if number >= 0 else None


def _extract_schedule_phrase(text: str) -> Optional[str]:
    lowered = text.lower()
    for phrase in SCHEDULE_PHRASES:
        if re.search(rf"\b{re.escape(phrase)}\b", lowered):
            return phrase
    return None


def basic_label_parse(text: Optional[str]) -> Dict[str, Any]:
    """Regex fallback for printed label text when no model is available."""
    empty = {field: None for field in LABEL_FIELDS}
    if not text:
        return {"medication": empty, "source": "heuristic", "processing_notes": "No label text provided."}

    medication = dict(empty)
    name_match = NAME_RE.search(text)
    dosage_match = DOSAGE_RE.search(text)
    quantity_match = QUANTITY_RE.search(text)
    days_match = DAYS_SUPPLY_RE.search(text)
    refills_match = REFILLS_RE.search(text)
    filled_match = FILLED_RE.search(text)
    expiry_match = EXPIRY_RE.search(text)
    pharmacy_match = PHARMACY_RE.search(text)

    if name_match:
        medication["name"] = name_match.group(1).strip()
    if dosage_match:
        medication["dosage"] = dosage_match.group(1).replace(" ", "")
    medication["schedule"] = _extract_schedule_phrase(text)
    if quantity_match:
        medication["quantity"] = int(quantity_match.group(1))
    if days_match:
        medication["days_supply"] = int(days_match.group(1) or days_match.group(2))
    if refills_match:
        token = refills_match.group(1).lower()
        medication["refills_remaining"] = 0 if token in ("none", "no") else int(token)
    if filled_match:
        medication["date_filled"] = parse_label_date(filled_match.group(1))
    if expiry_match:
        medication["refill_expiry_date"] = parse_label_date(expiry_match.group(1))
    if pharmacy_match:
        medication["pharmacy_name"] = pharmacy_match.group(1).strip()

    notes = "Parsed with heuristic fallback; values may be incomplete and require user confirmation."
    return {"medication": medication, "source": "heuristic", "processing_notes": notes}


def normalize_label_output(payload: Dict[str, Any]) -> Dict[str, Any]:
    raw = payload.get("medication") if isinstance(payload.get("medication"), dict) else payload
    medication: Dict[str, Any] = {}
    for field in ("name", "dosage", "schedule", "pharmacy_name"):
        value = raw.get(field)
        medication[field] = value.strip() if isinstance(value, str) and value.strip() else None
    for field in ("quantity", "days_supply", "refills_remaining"):
        medication[field] = parse_label_int(raw.get(field))
    for field in ("date_filled", "refill_expiry_date"):
        medication[field] = parse_label_date(raw.get(field))
    notes = payload.get("processing_notes")
    return {
        "medication": medication,
        "source": "openai",
        "processing_notes": notes if isinstance(notes, str) and notes else "Extracted from label with vision model",
    }


async def extract_refill_fields(text: Optional[str] = None, image_base64: Optional[str] = None) -> Dict[str, Any]:
    api_key = os.environ.get("OPENAI_API_KEY")
    if not api_key:
        return basic_label_parse(text)

    try:
        client = OpenAI(api_key=api_key)
        model = os.environ.get("OPENAI_OCR_MODEL", DEFAULT_OCR_MODEL)
        user_text = f"Read this prescription label. Printed text (may be empty): {text or 'None'}"
        if image_base64:
            content: Any = [
                {"type": "text", "text": user_text},
                {"type": "image_url", "image_url": {"url": f"data:image/jpeg;base64,{image_base64}"}},
            ]
        else:
            content = user_text

        completion = await asyncio.to_thread(
            lambda: client.chat.completions.create(
                model=model,
                messages=[
                    {"role": "system", "content": SYSTEM_MESSAGE},
                    {"role": "user", "content": content},
                ],
                response_format={"type": "json_object"},
                temperature=0,
            )
        )
        response_text = completion.choices[0].message.content or "{}"
        logger.info("[label_response] %s", response_text)
        return normalize_label_output(json.loads(response_text))
    except Exception as e:
        logger.error(f"OpenAI label extraction error: {e}")
        return basic_label_parse(text)
