"""Script to initialize the database."""

import asyncio
import sys
from decimal import Decimal

from sqlalchemy import select, text

from clinicdesk.config import settings
from clinicdesk.database import engine
from clinicdesk.models import config_entries, metadata
from clinicdesk.services.billing_service import BASE_FEE_KEY


async def init_db(base_fee: Decimal | None = None) -> None:
    """
    Create all tables and seed the consultation fee.

    The ``billing.base_fee`` entry is only written when missing, so rerunning
    never overwrites a fee changed by operations.
    """
    async with engine.begin() as conn:
        if engine.dialect.name == "postgresql":
            await conn.execute(text('CREATE EXTENSION IF NOT EXISTS "pgcrypto"'))

        await conn.run_sync(metadata.create_all)

        existing = await conn.execute(
            select(config_entries.c.key).where(config_entries.c.key == BASE_FEE_KEY)
        )
        if existing.first() is None:
            fee = base_fee if base_fee is not None else settings.billing_default_base_fee
            await conn.execute(
                config_entries.insert().values(key=BASE_FEE_KEY, value={"amount": str(fee)})
            )
            print(f"✓ Seeded {BASE_FEE_KEY} = {fee}")

    print("✓ Database initialized successfully!")


if __name__ == "__main__":
    asyncio.run(init_db(Decimal(sys.argv[1]) if len(sys.argv) > 1 else None))
