"""
Database Seeding Script.

Populates the `patients` and `consultations` tables with sample data
so the pipeline can be exercised end to end. Place a recording at
``<AUDIO_STORAGE_ROOT>/uploads/recordings/sample_consultation.mp3``
before processing the seeded consultation.
"""

import asyncio
import os
import sys

# Add project root to path so we can import src
sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from src.db import CONSULTATIONS, PATIENTS, get_db
from src.logging_config import setup_logging, get_logger

setup_logging()
logger = get_logger(__name__)

SAMPLE_PATIENTS = [
    {"name": "Margaret Ellis", "date_of_birth": "1958-03-14"},
    {"name": "Tom Okafor", "date_of_birth": "1984-11-02"},
]

SAMPLE_RECORDING = "/uploads/recordings/sample_consultation.mp3"


async def seed():
    db = get_db()

    logger.info("Seeding database...")

    for patient in SAMPLE_PATIENTS:
        existing = db.client.table(PATIENTS).select("id").eq("name", patient["name"]).execute()

        if existing.data:
            patient_id = existing.data[0]["id"]
            logger.info(f"Skipping {patient['name']} (already exists)")
        else:
            result = db.client.table(PATIENTS).insert(patient).execute()
            if not result.data:
                logger.error(f"Failed to create {patient['name']}")
                continue
            patient_id = result.data[0]["id"]
            logger.info(f"Created {patient['name']}", id=patient_id)

        result = db.client.table(CONSULTATIONS).insert({
            "patient_id": patient_id,
            "consultation_date": "2026-02-18",
            "consultation_time": "09:30:00",
            "consultation_type": "Initial consultation",
            "status": "scheduled",
            "processing_status": "pending",
            "recording_url": SAMPLE_RECORDING,
        }).execute()
        if result.data:
            logger.info("Created consultation", id=result.data[0]["id"], patient=patient["name"])

    logger.info("Seeding complete.")

if __name__ == "__main__":
    asyncio.run(seed())
