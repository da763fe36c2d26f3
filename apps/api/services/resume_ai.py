"""AI resume generation through an OpenAI-compatible LLM aggregator.

The pipeline runs four steps against the aggregator:

1. extract ATS keywords and qualifications from the job description
2. score every experience and project for relevance (1-10)
3. rewrite bullet points of the most relevant items
4. write a targeted professional summary

Unparsable model replies degrade per step (local keyword extraction,
neutral score, original bullets, existing summary). Transport or API
failures abort the pipeline and the generator returns the static demo
resume flagged ``degraded=True`` instead.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
import uuid
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from openai import OpenAI, OpenAIError

from config import settings
from errors import ExternalServiceError

logger = logging.getLogger(__name__)

MAX_TOP_EXPERIENCES = 3
MAX_TOP_PROJECTS = 2
MAX_KEYWORDS = 15
NEUTRAL_RELEVANCE = 5

KNOWN_TECH_KEYWORDS = (
    "javascript", "typescript", "python", "java", "c++", "c#", "go", "rust", "php", "ruby",
    "react", "vue", "angular", "express", "django", "flask", "fastapi", "spring",
    "nodejs", "node.js", "html", "css", "sql", "mongodb", "postgresql", "mysql", "redis",
    "aws", "azure", "gcp", "docker", "kubernetes", "terraform", "git", "agile", "scrum",
    "api", "rest", "graphql", "testing", "jest", "pytest", "selenium", "cypress",
)
FILLER_WORDS = {
    "with", "that", "this", "from", "have", "will", "your", "work", "team", "experience",
    "about", "their", "they", "what", "which", "while", "would", "should", "other", "more",
}


@dataclass
class GenerationResult:
    resume: Dict[str, Any]
    degraded: bool
    provider: str
    model: str
    fallback_reason: Optional[str] = None
    keywords: List[str] = field(default_factory=list)

    def meta(self) -> Dict[str, Any]:
        return {
            "provider": self.provider,
            "model": self.model,
            "degraded": self.degraded,
            "fallback_reason": self.fallback_reason,
            "keywords": list(self.keywords),
        }


def get_llm_client() -> Optional[OpenAI]:
    """Return an aggregator client, or None when no usable key is configured."""
    api_key = (settings.OPENROUTER_API_KEY or "").strip()
    if not api_key or "your_" in api_key or api_key == "test-key":
        return None
    return OpenAI(
        api_key=api_key,
        base_url=settings.OPENROUTER_BASE_URL,
        timeout=max(float(settings.EXTERNAL_TIMEOUT_SECONDS), 1.0),
        max_retries=1,
        default_headers={
            "HTTP-Referer": settings.FRONTEND_URL,
            "X-Title": settings.OPENROUTER_APP_TITLE,
        },
    )


def extract_json_object(text: Optional[str]) -> Dict[str, Any]:
    """Pull the first JSON object out of a chat reply (fences and prose tolerated)."""
    raw = (text or "").strip()
    raw = re.sub(r"^```(?:json)?\s*|\s*```$", "", raw)
    start, end = raw.find("{"), raw.rfind("}")
    if start < 0 or end <= start:
        raise ValueError("no JSON object in model reply")
    parsed = json.loads(raw[start:end + 1])
    if not isinstance(parsed, dict):
        raise ValueError("model reply is not a JSON object")
    return parsed


def extract_keywords_fallback(job_description: str) -> List[str]:
    """Known tech terms first, then words repeated in the posting."""
    text = (job_description or "").lower()
    found = [keyword for keyword in KNOWN_TECH_KEYWORDS if keyword in text]

    words = re.findall(r"\b[a-z]{4,}\b", text)
    counts = Counter(word for word in words if word not in KNOWN_TECH_KEYWORDS and word not in FILLER_WORDS)
    frequent = [word for word, count in counts.most_common() if count > 1][:5]

    return (found + frequent)[:MAX_KEYWORDS]


def _string_list(value: Any, limit: int = MAX_KEYWORDS) -> List[str]:
    if not isinstance(value, list):
        return []
    return [str(item).strip() for item in value if str(item).strip()][:limit]


def bullet_texts(item: Dict[str, Any]) -> List[str]:
    bullets = item.get("bulletPoints") or item.get("description") or []
    if isinstance(bullets, str):
        bullets = [line for line in bullets.splitlines()]
    texts: List[str] = []
    for bullet in bullets:
        content = bullet.get("content") if isinstance(bullet, dict) else bullet
        content = str(content or "").strip().lstrip("-• ").strip()
        if content:
            texts.append(content)
    return texts


def with_bullets(item: Dict[str, Any], bullets: List[str]) -> Dict[str, Any]:
    item_id = str(item.get("id") or uuid.uuid4())
    updated = dict(item)
    updated["id"] = item_id
    updated["bulletPoints"] = [{"id": f"{item_id}-b{index}", "content": text} for index, text in enumerate(bullets, 1)]
    updated.pop("description", None)
    return updated


def skill_names(skills: Any) -> List[str]:
    names: List[str] = []
    for skill in skills or []:
        if isinstance(skill, dict):
            names.extend(str(name) for name in (skill.get("list") or []) if name)
            if skill.get("name"):
                names.append(str(skill["name"]))
        elif skill:
            names.append(str(skill))
    return names


def _item_text(item: Dict[str, Any], item_type: str) -> str:
    if item_type == "experience":
        header = f"{item.get('jobTitle') or item.get('position') or ''} at {item.get('company') or ''}"
    else:
        technologies = ", ".join(str(tech) for tech in item.get("technologies") or [])
        header = f"{item.get('name') or ''} ({technologies})" if technologies else str(item.get("name") or "")
    return "\n".join([header.strip()] + bullet_texts(item))


def personal_info_from_profile(profile: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "fullName": profile.get("full_name") or "",
        "email": profile.get("email") or "",
        "phone": profile.get("phone") or "",
        "location": profile.get("location") or "",
        "linkedin": profile.get("linkedin") or "",
        "github": profile.get("github") or "",
        "portfolio": profile.get("portfolio") or "",
    }


def resume_from_profile(profile: Dict[str, Any]) -> Dict[str, Any]:
    """Copy profile sections into the ResumeData document shape."""
    return {
        "personalInfo": personal_info_from_profile(profile),
        "professionalSummary": profile.get("professional_summary") or "",
        "experiences": [with_bullets(item, bullet_texts(item)) for item in profile.get("experiences") or []],
        "education": list(profile.get("education") or []),
        "projects": [with_bullets(item, bullet_texts(item)) for item in profile.get("projects") or []],
        "skills": list(profile.get("skills") or []),
        "certifications": list(profile.get("certifications") or []),
        "awards": list(profile.get("awards") or []),
        "languages": list(profile.get("languages") or []),
        "volunteerExperiences": list(profile.get("volunteer_experiences") or []),
    }


def build_demo_resume(profile: Optional[Dict[str, Any]], job_description: str = "") -> Dict[str, Any]:
    """Static resume used for demo mode and when the aggregator is unavailable."""
    profile = profile or {}
    resume = resume_from_profile(profile)
    info = resume["personalInfo"]
    info["fullName"] = info["fullName"] or "Demo User"
    info["email"] = info["email"] or "demo@example.com"
    info["phone"] = info["phone"] or "+1 (555) 000-0000"
    info["location"] = info["location"] or "Demo City, State"

    keywords = extract_keywords_fallback(job_description)[:5]
    if not resume["professionalSummary"]:
        focus = f" with hands-on experience in {', '.join(keywords)}" if keywords else ""
        resume["professionalSummary"] = (
            f"Results-driven professional{focus}. This demo resume showcases the builder; "
            "edit every section to match your own background."
        )
    if not resume["experiences"]:
        resume["experiences"] = [
            with_bullets(
                {
                    "id": "demo-exp-1",
                    "company": "Demo Company Inc.",
                    "jobTitle": "Software Engineer",
                    "location": "Remote",
                    "startDate": "2021-01",
                    "endDate": "",
                    "isCurrent": True,
                },
                [
                    "Developed and maintained customer-facing web applications used by 10,000+ users",
                    "Cut page load times by 40% through caching and query optimization",
                    "Mentored two junior engineers and led weekly code reviews",
                ],
            )
        ]
    if not resume["education"]:
        resume["education"] = [
            {
                "id": "demo-edu-1",
                "school": "Demo University",
                "degree": "Bachelor of Science",
                "fieldOfStudy": "Computer Science",
                "startDate": "2016-09",
                "endDate": "2020-06",
            }
        ]
    if not resume["skills"]:
        resume["skills"] = [
            {"id": "demo-skills-1", "category": "Technical", "list": keywords or ["Communication", "Problem Solving"]}
        ]
    return resume


def rule_based_suggestions(resume_data: Dict[str, Any]) -> List[Dict[str, Any]]:
    """Deterministic improvement hints used when the aggregator is unavailable."""
    suggestions: List[Dict[str, Any]] = []

    def _add(kind: str, section: str, suggested: str, reason: str, original: Optional[str] = None) -> None:
        suggestion = {
            "id": f"rule-{len(suggestions) + 1}",
            "type": kind,
            "section": section,
            "suggested": suggested,
            "reason": reason,
        }
        if original:
            suggestion["original"] = original
        suggestions.append(suggestion)

    summary = str(resume_data.get("professionalSummary") or "").strip()
    if len(summary) < 80:
        _add(
            "improvement",
            "Professional Summary",
            "Write 2-3 sentences naming your role, years of experience and two signature achievements.",
            "A specific summary is the first thing recruiters and ATS filters read.",
            original=summary or None,
        )

    for experience in resume_data.get("experiences") or []:
        bullets = bullet_texts(experience)
        label = experience.get("company") or experience.get("jobTitle") or "this role"
        if len(bullets) < 3:
            _add("addition", "Experience", f"Add {3 - len(bullets)} more bullet point(s) for {label}.",
                 "Three to five bullets per role show scope without padding.")
        unquantified = [bullet for bullet in bullets if not re.search(r"\d", bullet)]
        if unquantified:
            _add("improvement", "Experience", f"Quantify the impact: {unquantified[0]} (by X%, for N users).",
                 "Numbers make achievements concrete and comparable.", original=unquantified[0])

    if not skill_names(resume_data.get("skills")):
        _add("addition", "Skills", "Add a categorized skills section (languages, frameworks, tools).",
             "ATS keyword matching relies heavily on the skills section.")

    for project in resume_data.get("projects") or []:
        if not project.get("technologies"):
            _add("addition", "Projects", f"List the technologies used in {project.get('name') or 'this project'}.",
                 "Technologies double as searchable keywords.")

    return suggestions[:8]


class ResumeGenerator:
    """Callable ``(job_description, profile) -> GenerationResult`` over the aggregator."""

    def __init__(self, client: Optional[OpenAI], model: Optional[str] = None):
        self.client = client
        self.model = model or settings.OPENROUTER_MODEL

    async def _chat(self, system: str, user: str, *, temperature: float = 0.1, max_tokens: int = 500) -> str:
        if self.client is None:
            raise ExternalServiceError("openrouter", "API key not configured")
        try:
            response = await asyncio.to_thread(
                self.client.chat.completions.create,
                model=self.model,
                messages=[
                    {"role": "system", "content": system},
                    {"role": "user", "content": user},
                ],
                temperature=temperature,
                max_tokens=max_tokens,
            )
        except OpenAIError as exc:
            raise ExternalServiceError("openrouter", str(exc)) from exc

        content = response.choices[0].message.content if response.choices else None
        if not content:
            raise ExternalServiceError("openrouter", "empty completion")
        return content

    async def extract_keywords(self, job_description: str) -> Tuple[List[str], List[str]]:
        reply = await self._chat(
            "You analyze job descriptions. Extract the 10-15 most important keywords, skills and "
            "qualifications an ATS would look for. Return ONLY a JSON object: "
            '{"keywords": ["..."], "qualifications": ["..."]}',
            f"Extract the key keywords and qualifications from this job description:\n\n{job_description}",
        )
        try:
            parsed = extract_json_object(reply)
        except ValueError as exc:
            logger.warning("Keyword extraction reply unparsable (%s); using local extraction", exc)
            return extract_keywords_fallback(job_description), []
        keywords = _string_list(parsed.get("keywords")) or extract_keywords_fallback(job_description)
        return keywords, _string_list(parsed.get("qualifications"))

    async def score_relevance(
        self,
        keywords: List[str],
        qualifications: List[str],
        item_text: str,
        item_type: str = "experience",
    ) -> int:
        reply = await self._chat(
            f"You evaluate how relevant a {item_type} is to a job posting. Score 1-10 from keyword "
            'matches and alignment with qualifications. Return ONLY: {"relevance_score": 8, "reason": "..."}',
            f"Job Keywords: {', '.join(keywords)}\nJob Qualifications: {'; '.join(qualifications)}\n\n"
            f"{item_type.capitalize()} to evaluate:\n{item_text}",
            max_tokens=200,
        )
        try:
            score = int(extract_json_object(reply).get("relevance_score"))
        except (ValueError, TypeError):
            return NEUTRAL_RELEVANCE
        return max(1, min(score, 10))

    async def optimize_bullets(self, keywords: List[str], bullets: List[str], item_type: str = "experience") -> List[str]:
        if not bullets:
            return []
        reply = await self._chat(
            f"You rewrite resume bullet points for a {item_type}. Start each with a strong action verb, "
            "weave in relevant keywords naturally, keep facts unchanged and quantify where the original "
            'does. Return ONLY: {"optimized_bullets": ["..."]}',
            f"Target keywords: {', '.join(keywords)}\n\nBullets:\n" + "\n".join(f"- {bullet}" for bullet in bullets),
            temperature=0.3,
            max_tokens=800,
        )
        try:
            optimized = _string_list(extract_json_object(reply).get("optimized_bullets"), limit=len(bullets) + 2)
        except ValueError:
            return bullets
        return optimized or bullets

    async def generate_summary(
        self,
        keywords: List[str],
        qualifications: List[str],
        current_summary: str,
        skills: List[str],
    ) -> str:
        reply = await self._chat(
            "You write concise professional resume summaries (2-4 sentences) targeted at a job posting. "
            'Return ONLY: {"professional_summary": "..."}',
            f"Job Keywords: {', '.join(keywords)}\nJob Qualifications: {'; '.join(qualifications)}\n"
            f"Candidate skills: {', '.join(skills)}\nCurrent summary: {current_summary or '(none)'}",
            temperature=0.5,
            max_tokens=400,
        )
        try:
            summary = str(extract_json_object(reply).get("professional_summary") or "").strip()
        except ValueError:
            return current_summary
        return summary or current_summary

    async def run_pipeline(self, job_description: str, profile: Dict[str, Any]) -> GenerationResult:
        keywords, qualifications = await self.extract_keywords(job_description)
        logger.info("Extracted %s keywords and %s qualifications", len(keywords), len(qualifications))

        experiences = list(profile.get("experiences") or [])
        projects = list(profile.get("projects") or [])
        scores = await asyncio.gather(
            *[self.score_relevance(keywords, qualifications, _item_text(item, "experience"), "experience") for item in experiences],
            *[self.score_relevance(keywords, qualifications, _item_text(item, "project"), "project") for item in projects],
        )
        experience_scores, project_scores = scores[:len(experiences)], scores[len(experiences):]

        top_experiences = [item for _, item in sorted(zip(experience_scores, experiences), key=lambda pair: -pair[0])][:MAX_TOP_EXPERIENCES]
        top_projects = [item for _, item in sorted(zip(project_scores, projects), key=lambda pair: -pair[0])][:MAX_TOP_PROJECTS]

        optimized = await asyncio.gather(
            *[self.optimize_bullets(keywords, bullet_texts(item), "experience") for item in top_experiences],
            *[self.optimize_bullets(keywords, bullet_texts(item), "project") for item in top_projects],
        )
        summary = await self.generate_summary(
            keywords,
            qualifications,
            profile.get("professional_summary") or "",
            skill_names(profile.get("skills")),
        )

        resume = resume_from_profile(profile)
        resume["professionalSummary"] = summary
        resume["experiences"] = [with_bullets(item, bullets) for item, bullets in zip(top_experiences, optimized[:len(top_experiences)])]
        resume["projects"] = [with_bullets(item, bullets) for item, bullets in zip(top_projects, optimized[len(top_experiences):])]

        return GenerationResult(
            resume=resume,
            degraded=False,
            provider="openrouter",
            model=self.model,
            keywords=keywords,
        )

    def fallback(self, job_description: str, profile: Optional[Dict[str, Any]], reason: str) -> GenerationResult:
        return GenerationResult(
            resume=build_demo_resume(profile, job_description),
            degraded=True,
            provider="static",
            model="demo-v1",
            fallback_reason=reason,
            keywords=extract_keywords_fallback(job_description),
        )

    async def __call__(self, job_description: str, profile: Dict[str, Any]) -> GenerationResult:
        if self.client is None:
            return self.fallback(job_description, profile, "LLM API key missing or unavailable")
        try:
            return await self.run_pipeline(job_description, profile)
        except ExternalServiceError as exc:
            logger.warning("Resume AI generation fallback: %s", exc)
            return self.fallback(job_description, profile, f"openrouter_error: {exc.message}")

    async def suggest_improvements(self, resume_data: Dict[str, Any]) -> Tuple[List[Dict[str, Any]], bool]:
        """Return ``(suggestions, degraded)`` for a ResumeData document."""
        if self.client is None:
            return rule_based_suggestions(resume_data), True
        try:
            reply = await self._chat(
                "You are an expert career coach. Provide 5-8 specific, actionable resume suggestions. "
                'Return ONLY: {"suggestions": [{"id": "...", "type": "improvement|addition|removal", '
                '"section": "...", "original": "...", "suggested": "...", "reason": "..."}]}',
                f"Resume Data:\n{json.dumps(resume_data, indent=2)}",
                temperature=0.7,
                max_tokens=2000,
            )
            raw = extract_json_object(reply).get("suggestions")
        except (ExternalServiceError, ValueError) as exc:
            logger.warning("AI suggestions fallback: %s", exc)
            return rule_based_suggestions(resume_data), True

        suggestions = []
        for index, item in enumerate(raw if isinstance(raw, list) else [], 1):
            if not isinstance(item, dict) or not item.get("suggested"):
                continue
            suggestions.append(
                {
                    "id": str(item.get("id") or f"ai-{index}"),
                    "type": item.get("type") if item.get("type") in ("improvement", "addition", "removal") else "improvement",
                    "section": str(item.get("section") or "General"),
                    "original": item.get("original"),
                    "suggested": str(item["suggested"]),
                    "reason": str(item.get("reason") or ""),
                }
            )
        if not suggestions:
            return rule_based_suggestions(resume_data), True
        return suggestions[:8], False
