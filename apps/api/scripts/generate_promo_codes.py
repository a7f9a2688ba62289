import argparse
import asyncio
import json
import sys
import os

# Add parent dir to path to find the app modules
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from database import engine, Base, async_session_maker
import models  # noqa: F401
from services.promo_codes import DEFAULT_PROMO_TEMPLATES, generate_promo_codes


async def generate_async(output_path: str, create_schema: bool):
    print("🎟️ Generating promo codes...")

    if create_schema:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async with async_session_maker() as db:
        codes = await generate_promo_codes(DEFAULT_PROMO_TEMPLATES, db)

    by_type = {}
    for item in codes:
        by_type.setdefault(item["type"], []).append(item["code"])

    for code_type, values in by_type.items():
        print(f"\n📦 {code_type} ({len(values)} codes):")
        for value in values:
            print(f"  - {value}")

    with open(output_path, "w", encoding="utf-8") as handle:
        json.dump(codes, handle, indent=2)
    print(f"\n✅ Generated {len(codes)} promo codes. Saved to {output_path}")

    await engine.dispose()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Generate the default batch of promo codes.")
    parser.add_argument("--output", default="promo_codes.json")
    parser.add_argument("--create-schema", action="store_true")
    args = parser.parse_args()
    asyncio.run(generate_async(args.output, args.create_schema))
