import asyncio
import logging

from loadblock.config import settings
from loadblock.database import engine, Base
from loadblock.ledger.client import SqlLedger

# Import all models to ensure they are registered in Base.metadata
from loadblock.drafts.models import DraftRecord, CargoLine, FreightCharge, DraftNote, DraftHistoryEntry
from loadblock.sync.models import ImmutableRecord, BolNumberSequence
from loadblock.audit.models import AuditEvent

logger = logging.getLogger(__name__)


async def init_models():
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Draft store tables created.")

    if settings.LEDGER_DATABASE_URL:
        ledger = SqlLedger.from_url(settings.LEDGER_DATABASE_URL)
        await ledger.create_schema()
        await ledger.dispose()
        logger.info("Ledger tables created.")


if __name__ == "__main__":
    logging.basicConfig(level=settings.LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    asyncio.run(init_models())
