import logging
import re
from datetime import date
from typing import Optional, Tuple

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from loadblock.errors import ValidationError
from loadblock.sync.models import BolNumberSequence

logger = logging.getLogger(__name__)

BOL_NUMBER_RE = re.compile(r"^BOL-(\d{4})-(\d{6})$")


def format_bol_number(year: int, sequence: int) -> str:
    """Format: BOL-YYYY-NNNNNN (6-digit sequence)"""
    return f"BOL-{year}-{sequence:06d}"


def parse_bol_number(bol_number: str) -> Tuple[int, int]:
    match = BOL_NUMBER_RE.match(bol_number or "")
    if not match:
        raise ValidationError("bol_number", f"Malformed BoL number: {bol_number}")
    return int(match.group(1)), int(match.group(2))


class BolNumberAllocator:
    """Sequential-per-year BoL numbers.

    Each allocation is committed on its own before the caller continues,
    so a number is never handed out twice even when the activation that
    requested it fails later. Gaps are expected.
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    async def allocate(self, on: Optional[date] = None) -> str:
        year = (on or date.today()).year
        for _ in range(2):
            result = await self.db.execute(
                select(BolNumberSequence)
                .where(BolNumberSequence.year == year)
                .with_for_update()
                .execution_options(populate_existing=True)
            )
            row = result.scalar_one_or_none()
            if row is None:
                row = BolNumberSequence(year=year, last_value=0)
                self.db.add(row)
            row.last_value += 1
            try:
                await self.db.commit()
            except IntegrityError:
                # Another process created this year's row first
                await self.db.rollback()
                continue
            bol_number = format_bol_number(year, row.last_value)
            logger.info(f"Allocated BoL number {bol_number}")
            return bol_number
        raise RuntimeError(f"Could not allocate a BoL number for {year}")
