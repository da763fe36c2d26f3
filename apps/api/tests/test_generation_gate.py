import pytest
from sqlalchemy import func
from sqlalchemy.exc import OperationalError
from sqlalchemy.future import select

from conftest import auth_header, create_user
from errors import ExternalServiceError, InsufficientCreditsError, ValidationError
from main import app
from models.resume import Resume
from routers.deps import get_resume_generator
from services.credits import CreditLedger
from services.generation_gate import ResumeGenerationGate, normalize_job_description
from services.resume_ai import GenerationResult, ResumeGenerator


JOB_DESCRIPTION = "Senior Python Engineer\nBuild FastAPI services on AWS with PostgreSQL and Docker."


class StubGenerator:
    def __init__(self, degraded=False, error=None):
        self.degraded = degraded
        self.error = error
        self.calls = []

    async def __call__(self, job_description, profile):
        self.calls.append((job_description, profile))
        if self.error is not None:
            raise self.error
        return GenerationResult(
            resume={"personalInfo": {"fullName": profile.get("full_name") or "Candidate"}, "experiences": []},
            degraded=self.degraded,
            provider="static" if self.degraded else "openrouter",
            model="demo-v1" if self.degraded else "test-model",
            keywords=["python", "fastapi"],
        )


@pytest.fixture
def use_generator():
    def _install(generator):
        app.dependency_overrides[get_resume_generator] = lambda: generator
        return generator

    yield _install
    app.dependency_overrides.pop(get_resume_generator, None)


async def _resume_count(session_maker, user_id):
    async with session_maker() as session:
        result = await session.execute(select(func.count(Resume.id)).where(Resume.user_id == user_id))
        return result.scalar()


@pytest.mark.asyncio
async def test_generation_debits_one_credit_and_links_resume(client, session_maker, use_generator):
    user_id = await create_user(session_maker, "gen@example.com")
    generator = use_generator(StubGenerator())

    resp = await client.post(
        "/resumes/generate",
        json={"jobDescription": JOB_DESCRIPTION},
        headers=auth_header(user_id),
    )
    assert resp.status_code == 200
    body = resp.json()
    assert body["credits_remaining"] == 2
    assert body["is_demo"] is False
    assert body["generation"]["provider"] == "openrouter"
    assert len(generator.calls) == 1

    async with session_maker() as session:
        entries = await CreditLedger(session).history(user_id)
        assert len(entries) == 1
        assert entries[0].type == "usage"
        assert entries[0].resume_id == body["resume_id"]
        resume = await session.get(Resume, body["resume_id"])
        assert resume.title == "Resume for Senior Python Engineer"
        assert resume.resume_data == body["resume"]


@pytest.mark.asyncio
async def test_insufficient_credits_returns_402_before_generating(client, session_maker, use_generator):
    user_id = await create_user(session_maker, "empty@example.com", credits=0)
    generator = use_generator(StubGenerator())

    resp = await client.post(
        "/resumes/generate",
        json={"job_description": JOB_DESCRIPTION},
        headers=auth_header(user_id),
    )
    assert resp.status_code == 402
    error = resp.json()["error"]
    assert error["type"] == "insufficient_credits"
    assert error["required"] == 1
    assert error["available"] == 0
    assert error["top_up_url"] == "/credits"
    assert generator.calls == []
    assert await _resume_count(session_maker, user_id) == 0


@pytest.mark.asyncio
async def test_blank_job_description_is_rejected_without_charge(client, session_maker, use_generator):
    user_id = await create_user(session_maker, "blank@example.com")
    generator = use_generator(StubGenerator())

    resp = await client.post("/resumes/generate", json={"job_description": "   "}, headers=auth_header(user_id))
    assert resp.status_code == 400
    assert resp.json()["error"]["field"] == "job_description"
    assert generator.calls == []

    async with session_maker() as session:
        assert await CreditLedger(session).get_balance(user_id) == 3


@pytest.mark.asyncio
async def test_failed_generation_is_never_charged(client, session_maker, use_generator):
    user_id = await create_user(session_maker, "fail@example.com")
    use_generator(StubGenerator(error=ExternalServiceError("openrouter", "upstream 500")))

    resp = await client.post(
        "/resumes/generate",
        json={"job_description": JOB_DESCRIPTION},
        headers=auth_header(user_id),
    )
    assert resp.status_code == 502

    async with session_maker() as session:
        ledger = CreditLedger(session)
        assert await ledger.get_balance(user_id) == 3
        assert await ledger.history(user_id) == []
    assert await _resume_count(session_maker, user_id) == 0


@pytest.mark.asyncio
async def test_ledger_outage_returns_retryable_503_without_charge_or_resume(client, session_maker, use_generator, monkeypatch):
    user_id = await create_user(session_maker, "outage@example.com")
    use_generator(StubGenerator())

    async def locked(self, *args, **kwargs):
        raise OperationalError("INSERT INTO credit_transactions", {}, Exception("database is locked"))

    monkeypatch.setattr(CreditLedger, "_append_entry", locked)

    resp = await client.post(
        "/resumes/generate",
        json={"job_description": JOB_DESCRIPTION},
        headers=auth_header(user_id),
    )
    assert resp.status_code == 503
    error = resp.json()["error"]
    assert error["type"] == "service_unavailable"
    assert error["retryable"] is True

    async with session_maker() as session:
        ledger = CreditLedger(session)
        assert await ledger.get_balance(user_id) == 3
        assert await ledger.history(user_id) == []
    assert await _resume_count(session_maker, user_id) == 0


@pytest.mark.asyncio
async def test_degraded_generation_is_stored_but_free(client, session_maker, use_generator):
    user_id = await create_user(session_maker, "degraded@example.com")
    use_generator(StubGenerator(degraded=True))

    resp = await client.post(
        "/resumes/generate",
        json={"job_description": JOB_DESCRIPTION},
        headers=auth_header(user_id),
    )
    assert resp.status_code == 200
    body = resp.json()
    assert body["degraded"] is True
    assert body["is_demo"] is True
    assert body["credits_remaining"] == 3

    async with session_maker() as session:
        assert await CreditLedger(session).history(user_id) == []
        resume = await session.get(Resume, body["resume_id"])
        assert resume.is_demo is True


@pytest.mark.asyncio
async def test_unconfigured_llm_falls_back_to_free_demo_resume(client, session_maker, use_generator):
    user_id = await create_user(session_maker, "nokey@example.com")
    use_generator(ResumeGenerator(client=None))

    resp = await client.post(
        "/resumes/generate",
        json={"job_description": JOB_DESCRIPTION},
        headers=auth_header(user_id),
    )
    assert resp.status_code == 200
    body = resp.json()
    assert body["degraded"] is True
    assert body["generation"]["fallback_reason"]
    assert body["resume"]["personalInfo"]["fullName"] == "Demo User"
    assert body["credits_remaining"] == 3


@pytest.mark.asyncio
async def test_generation_requires_authentication(client, use_generator):
    generator = use_generator(StubGenerator())

    resp = await client.post("/resumes/generate", json={"job_description": JOB_DESCRIPTION})
    assert resp.status_code == 401
    assert resp.json()["error"]["type"] == "unauthorized"
    assert generator.calls == []


@pytest.mark.asyncio
async def test_gate_spends_last_credits_then_rejects(session_maker):
    user_id = await create_user(session_maker, "gate@example.com", credits=2)
    generator = StubGenerator()

    async with session_maker() as session:
        gate = ResumeGenerationGate(session, CreditLedger(session), generator)
        first = await gate.generate(user_id, JOB_DESCRIPTION)
        second = await gate.generate(user_id, JOB_DESCRIPTION)
        assert (first["credits_remaining"], second["credits_remaining"]) == (1, 0)

        with pytest.raises(InsufficientCreditsError):
            await gate.generate(user_id, JOB_DESCRIPTION)
        assert len(generator.calls) == 2


@pytest.mark.asyncio
async def test_gate_passes_profile_to_generator(session_maker, client):
    user_id = await create_user(session_maker, "profiled@example.com")
    headers = auth_header(user_id)
    put = await client.put("/profile", json={"full_name": "Ada Lovelace", "skills": ["Python"]}, headers=headers)
    assert put.status_code == 200

    generator = StubGenerator()
    async with session_maker() as session:
        result = await ResumeGenerationGate(session, CreditLedger(session), generator).generate(user_id, JOB_DESCRIPTION)

    _, profile = generator.calls[0]
    assert profile["full_name"] == "Ada Lovelace"
    assert profile["skills"] == ["Python"]
    assert result["resume"]["personalInfo"]["fullName"] == "Ada Lovelace"


def test_normalize_job_description():
    assert normalize_job_description("  Backend role  ") == "Backend role"
    with pytest.raises(ValidationError):
        normalize_job_description(None)
    with pytest.raises(ValidationError):
        normalize_job_description("\n\t")


@pytest.mark.asyncio
async def test_demo_generation_is_free_and_stores_nothing(client, session_maker):
    user_id = await create_user(session_maker, "demo@example.com")

    anonymous = await client.post("/resumes/generate-demo", json={"jobDescription": "React developer"})
    assert anonymous.status_code == 200
    assert anonymous.json()["is_demo"] is True
    assert anonymous.json()["resume"]["personalInfo"]["fullName"] == "Demo User"

    for _ in range(3):
        resp = await client.post(
            "/resumes/generate-demo",
            json={"job_description": JOB_DESCRIPTION},
            headers=auth_header(user_id),
        )
        assert resp.status_code == 200

    async with session_maker() as session:
        assert await CreditLedger(session).get_balance(user_id) == 3
    assert await _resume_count(session_maker, user_id) == 0
