"""Resumes router: credit-gated AI generation, free demo generation and CRUD."""

from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends
from pydantic import AliasChoices, BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from database import get_db
from models.profile import Profile
from routers.auth_scope import AuthContext, get_auth_context, get_optional_auth_context
from routers.deps import get_credit_ledger, get_resume_generator
from routers.rate_limit import rate_limit
from services.credits import CreditLedger
from services.generation_gate import ResumeGenerationGate
from services.resume_ai import ResumeGenerator, build_demo_resume
from services.resumes import (
    create_resume_service,
    delete_resume_service,
    get_resume_service,
    list_resumes_service,
    serialize_profile,
    update_resume_service,
)

router = APIRouter()


class GenerateResumeRequest(BaseModel):
    job_description: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("job_description", "jobDescription")
    )


class SuggestionsRequest(BaseModel):
    resume_data: Dict[str, Any]


class CreateResumeRequest(BaseModel):
    title: str = Field(min_length=1)
    resume_data: Dict[str, Any] = Field(default_factory=dict)
    job_description: Optional[str] = None


class UpdateResumeRequest(BaseModel):
    title: Optional[str] = None
    resume_data: Optional[Dict[str, Any]] = None
    job_description: Optional[str] = None


@router.post("/generate")
async def generate_resume(
    request: GenerateResumeRequest,
    _rate_limit: None = Depends(rate_limit("resume_generate", limit=30, window_seconds=3600)),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
    ledger: CreditLedger = Depends(get_credit_ledger),
    generator: ResumeGenerator = Depends(get_resume_generator),
):
    """Generate a tailored resume for one credit; degraded output is free."""
    gate = ResumeGenerationGate(db, ledger, generator)
    return await gate.generate(auth.user_id, request.job_description)


@router.post("/generate-demo")
async def generate_demo_resume(
    request: GenerateResumeRequest,
    auth: Optional[AuthContext] = Depends(get_optional_auth_context),
    db: AsyncSession = Depends(get_db),
):
    """Free, unlimited static resume. Bypasses the credit gate and stores nothing."""
    profile: Dict[str, Any] = {}
    if auth is not None:
        row = (await db.execute(select(Profile).where(Profile.user_id == auth.user_id))).scalar_one_or_none()
        if row is not None:
            profile = serialize_profile(row)
    return {
        "resume": build_demo_resume(profile, request.job_description or ""),
        "is_demo": True,
        "degraded": True,
        "message": "Resume generated using demo mode",
    }


@router.post("/ai-suggestions")
async def ai_suggestions(
    request: SuggestionsRequest,
    _auth: AuthContext = Depends(get_auth_context),
    generator: ResumeGenerator = Depends(get_resume_generator),
):
    suggestions, degraded = await generator.suggest_improvements(request.resume_data)
    return {"suggestions": suggestions, "degraded": degraded}


@router.get("")
async def list_resumes(
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    items = await list_resumes_service(auth.user_id, db)
    return {"count": len(items), "items": items}


@router.post("")
async def create_resume(
    request: CreateResumeRequest,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    return await create_resume_service(
        auth.user_id,
        request.title,
        request.resume_data,
        db,
        job_description=request.job_description or "",
    )


@router.get("/{resume_id}")
async def get_resume(
    resume_id: str,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    return await get_resume_service(resume_id, auth.user_id, db)


@router.put("/{resume_id}")
async def update_resume(
    resume_id: str,
    request: UpdateResumeRequest,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    return await update_resume_service(resume_id, auth.user_id, request.model_dump(exclude_unset=True), db)


@router.delete("/{resume_id}")
async def delete_resume(
    resume_id: str,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    await delete_resume_service(resume_id, auth.user_id, db)
    return {"deleted": True, "id": resume_id}
