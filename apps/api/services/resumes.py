"""Profile and resume persistence helpers."""

from __future__ import annotations

from typing import Any, Dict, List

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from errors import NotFoundError, ValidationError
from models.profile import PROFILE_LIST_FIELDS, Profile
from models.resume import Resume

PROFILE_SCALAR_FIELDS = (
    "full_name",
    "email",
    "phone",
    "location",
    "linkedin",
    "github",
    "portfolio",
    "professional_summary",
)


def serialize_profile(profile: Profile) -> Dict[str, Any]:
    payload: Dict[str, Any] = {"id": profile.id, "user_id": profile.user_id}
    for name in PROFILE_SCALAR_FIELDS:
        payload[name] = getattr(profile, name)
    for name in PROFILE_LIST_FIELDS:
        payload[name] = list(getattr(profile, name) or [])
    payload["updated_at"] = profile.updated_at.isoformat() if profile.updated_at else None
    return payload


def serialize_resume(resume: Resume, include_data: bool = True) -> Dict[str, Any]:
    payload = {
        "id": resume.id,
        "title": resume.title,
        "job_description": resume.job_description,
        "is_demo": bool(resume.is_demo),
        "generation": resume.generation_meta,
        "created_at": resume.created_at.isoformat() if resume.created_at else None,
        "updated_at": resume.updated_at.isoformat() if resume.updated_at else None,
    }
    if include_data:
        payload["resume"] = resume.resume_data
    return payload


async def get_profile_service(user_id: str, db: AsyncSession) -> Dict[str, Any]:
    result = await db.execute(select(Profile).where(Profile.user_id == user_id))
    profile = result.scalar_one_or_none()
    if not profile:
        raise NotFoundError("Profile not found")
    return serialize_profile(profile)


async def upsert_profile_service(user_id: str, updates: Dict[str, Any], db: AsyncSession) -> Dict[str, Any]:
    """Create the user's profile or overwrite the supplied fields."""
    result = await db.execute(select(Profile).where(Profile.user_id == user_id))
    profile = result.scalar_one_or_none()
    if profile is None:
        profile = Profile(user_id=user_id)
        db.add(profile)

    for name, value in updates.items():
        if name in PROFILE_SCALAR_FIELDS:
            setattr(profile, name, value)
        elif name in PROFILE_LIST_FIELDS:
            if not isinstance(value, list):
                raise ValidationError(f"{name} must be a list", field=name)
            setattr(profile, name, value)

    await db.commit()
    await db.refresh(profile)
    return serialize_profile(profile)


async def list_resumes_service(user_id: str, db: AsyncSession) -> List[Dict[str, Any]]:
    result = await db.execute(
        select(Resume).where(Resume.user_id == user_id).order_by(Resume.created_at.desc())
    )
    return [serialize_resume(row, include_data=False) for row in result.scalars().all()]


async def _owned_resume(resume_id: str, user_id: str, db: AsyncSession) -> Resume:
    # Foreign resumes read as missing so ids cannot be probed.
    result = await db.execute(select(Resume).where(Resume.id == resume_id, Resume.user_id == user_id))
    resume = result.scalar_one_or_none()
    if not resume:
        raise NotFoundError("Resume not found")
    return resume


async def get_resume_service(resume_id: str, user_id: str, db: AsyncSession) -> Dict[str, Any]:
    return serialize_resume(await _owned_resume(resume_id, user_id, db))


async def create_resume_service(
    user_id: str,
    title: str,
    resume_data: Dict[str, Any],
    db: AsyncSession,
    job_description: str = "",
) -> Dict[str, Any]:
    if not (title or "").strip():
        raise ValidationError("title is required", field="title")
    profile = (await db.execute(select(Profile.id).where(Profile.user_id == user_id))).scalar_one_or_none()
    resume = Resume(
        user_id=user_id,
        profile_id=profile,
        title=title.strip(),
        job_description=job_description or None,
        resume_data=resume_data,
        is_demo=False,
    )
    db.add(resume)
    await db.commit()
    await db.refresh(resume)
    return serialize_resume(resume)


async def update_resume_service(
    resume_id: str,
    user_id: str,
    updates: Dict[str, Any],
    db: AsyncSession,
) -> Dict[str, Any]:
    resume = await _owned_resume(resume_id, user_id, db)
    if "title" in updates:
        if not (updates["title"] or "").strip():
            raise ValidationError("title must not be blank", field="title")
        resume.title = updates["title"].strip()
    if "resume_data" in updates:
        resume.resume_data = updates["resume_data"]
    if "job_description" in updates:
        resume.job_description = updates["job_description"]
    await db.commit()
    await db.refresh(resume)
    return serialize_resume(resume)


async def delete_resume_service(resume_id: str, user_id: str, db: AsyncSession) -> None:
    resume = await _owned_resume(resume_id, user_id, db)
    await db.delete(resume)
    await db.commit()
