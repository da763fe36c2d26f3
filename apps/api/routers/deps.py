"""Shared FastAPI dependencies for services bound to the request session."""

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from services.billing import BillingService
from services.credits import CreditLedger
from services.resume_ai import ResumeGenerator, get_llm_client


async def get_credit_ledger(db: AsyncSession = Depends(get_db)) -> CreditLedger:
    return CreditLedger(db)


async def get_billing_service(
    db: AsyncSession = Depends(get_db),
    ledger: CreditLedger = Depends(get_credit_ledger),
) -> BillingService:
    return BillingService(db, ledger)


def get_resume_generator() -> ResumeGenerator:
    return ResumeGenerator(get_llm_client())
