"""Credit gate around AI resume generation: check, generate, then debit."""

from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, Dict, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from errors import InsufficientCreditsError, ValidationError
from models.profile import Profile
from models.resume import Resume
from services.credits import CreditLedger
from services.resume_ai import GenerationResult
from services.resumes import serialize_profile

logger = logging.getLogger(__name__)

Generator = Callable[[str, Dict[str, Any]], Awaitable[GenerationResult]]


def normalize_job_description(job_description: Optional[str]) -> str:
    text = (job_description or "").strip()
    if not text:
        raise ValidationError("Job description is required", field="job_description")
    return text


def _resume_title(job_description: str) -> str:
    first_line = job_description.splitlines()[0].strip()
    return f"Resume for {first_line[:50]}{'...' if len(first_line) > 50 else ''}"


class ResumeGenerationGate:
    """Enforces "generation costs credits" independent of how generation works.

    The balance check runs first, the generator second, and the debit only
    after the generator returned. Degraded results (static fallback content)
    are stored but not charged.
    """

    def __init__(
        self,
        db: AsyncSession,
        ledger: CreditLedger,
        generator: Generator,
        cost: Optional[int] = None,
    ):
        self.db = db
        self.ledger = ledger
        self.generator = generator
        self.cost = int(cost if cost is not None else settings.GENERATION_CREDIT_COST)

    async def generate(self, user_id: str, job_description: Optional[str]) -> Dict[str, Any]:
        text = normalize_job_description(job_description)

        if not await self.ledger.has_sufficient_balance(user_id, self.cost):
            available = await self.ledger.get_balance(user_id)
            raise InsufficientCreditsError(required=self.cost, available=available)

        profile_row = (
            await self.db.execute(select(Profile).where(Profile.user_id == user_id))
        ).scalar_one_or_none()
        profile = serialize_profile(profile_row) if profile_row else {}

        # Generator errors propagate; nothing has been charged yet.
        result = await self.generator(text, profile)

        resume = Resume(
            user_id=user_id,
            profile_id=profile_row.id if profile_row else None,
            title=_resume_title(text),
            job_description=text,
            resume_data=result.resume,
            is_demo=result.degraded,
            generation_meta=result.meta(),
        )
        self.db.add(resume)
        try:
            await self.db.flush()
            if result.degraded:
                await self.db.commit()
                credits_remaining = await self.ledger.get_balance(user_id)
            else:
                credits_remaining = await self.ledger.debit(
                    user_id,
                    self.cost,
                    "Resume generation",
                    resume_id=resume.id,
                    commit=False,
                )
                await self.db.commit()
        except InsufficientCreditsError:
            # Balance was spent between the check and the debit.
            await self.db.rollback()
            raise
        except SQLAlchemyError:
            await self.db.rollback()
            raise

        logger.info(
            "Generated resume %s for user=%s (degraded=%s, credits_remaining=%s)",
            resume.id,
            user_id,
            result.degraded,
            credits_remaining,
        )
        return {
            "resume_id": resume.id,
            "resume": result.resume,
            "credits_remaining": credits_remaining,
            "is_demo": result.degraded,
            "degraded": result.degraded,
            "generation": result.meta(),
        }
