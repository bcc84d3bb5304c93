"""
Idempotent seed: org settings document and a starter model catalog.
Existing models (matched on code) and an existing settings document are left untouched.

    python seed.py
"""
import asyncio
import uuid
from datetime import datetime, timezone
from pathlib import Path

from dotenv import load_dotenv

load_dotenv(Path(__file__).resolve().parent / ".env")

from database import get_db_context  # noqa: E402
from services.model_catalog import slugify_name  # noqa: E402
from services.settings_service import DEFAULT_ORG_SETTINGS, ORG_SETTINGS_KEY  # noqa: E402

STARTER_OPTIONS = [
    {"id": "porch-covered", "name": "Covered Porch", "price": 8500},
    {"id": "appliance-upgrade", "name": "Stainless Appliance Package", "price": 4200},
    {"id": "metal-roof", "name": "Metal Roof", "price": 6800},
]

STARTER_MODELS = [
    {
        "code": "APS-90",
        "name": "The Magnolia",
        "base_price": 71475,
        "specs": {"width": "14'", "length": "40'", "square_feet": 560, "bedrooms": 1, "bathrooms": 1},
    },
    {
        "code": "APS-630",
        "name": "The Juniper",
        "base_price": 89950,
        "specs": {"width": "16'", "length": "52'", "square_feet": 832, "bedrooms": 2, "bathrooms": 1},
    },
    {
        "code": "APX-150",
        "name": "The Willow",
        "base_price": 112400,
        "specs": {"width": "16'", "length": "66'", "square_feet": 1056, "bedrooms": 3, "bathrooms": 2},
    },
]


async def seed_database():
    print("Seeding database (idempotent)...")
    now = datetime.now(timezone.utc)

    async with get_db_context() as db:
        # 1) Org settings
        existing_settings = await db.settings.find_one({"key": ORG_SETTINGS_KEY})
        if not existing_settings:
            await db.settings.insert_one({"key": ORG_SETTINGS_KEY, **DEFAULT_ORG_SETTINGS, "updated_at": now})
            print("  Org settings created from defaults")
        else:
            print("  Org settings already exist")

        # 2) Model catalog
        for model in STARTER_MODELS:
            if await db.models.find_one({"code": model["code"]}):
                print(f"  Model already exists: {model['code']}")
                continue
            await db.models.insert_one({
                "model_id": str(uuid.uuid4()),
                "slug": slugify_name(model["name"]),
                "description": "",
                "features": [],
                "images": [],
                "options": STARTER_OPTIONS,
                "created_at": now,
                "updated_at": now,
                **model,
            })
            print(f"  Model created: {model['code']} ({model['name']})")

    print("Seeding complete.")


if __name__ == "__main__":
    asyncio.run(seed_database())
