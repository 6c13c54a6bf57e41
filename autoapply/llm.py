"""AI text service: Groq's OpenAI-compatible chat endpoint, JSON replies only."""
from __future__ import annotations

import json
from typing import Any, Protocol

import openai
from openai import OpenAI

from autoapply.config import Settings
from autoapply.errors import AIServiceError
from autoapply.log import get_logger
from autoapply.retry import retry

log = get_logger(__name__)


class TextService(Protocol):
    def complete_json(self, prompt: str, *, timeout: float, max_tokens: int = 800) -> dict[str, Any]: ...


EXPANSION_PROMPT = """\
You help a job board understand what a job seeker is looking for.
Expand the search query below into search terms.
Return ONLY valid JSON with these exact keys:

{{
  "must_include": ["terms a matching job must mention"],
  "must_exclude": ["terms that indicate a different kind of job"],
  "related": ["adjacent skills or titles"],
  "boost_terms": ["job titles to rank first, best first"]
}}

Rules:
- Use lower-case terms of one to three words.
- "must_include" needs at least two terms.
- Do not put a term in both "must_include" and "must_exclude".

Search query: {query}
Job category: {category}
"""

ATS_PROMPT = """\
You are an applicant tracking system. Compare the CV with the job below.
Return ONLY valid JSON with these exact keys:

{{
  "skill_match_score": 0,
  "experience_match_score": 0,
  "education_match_score": 0,
  "matched_keywords": ["keyword"],
  "missing_keywords": ["keyword"],
  "strengths": ["short sentence"],
  "weaknesses": ["short sentence"],
  "recommendations": ["short sentence"]
}}

Scores are integers from 0 to 100.

Job title: {title}
Job category: {category}
Required experience: {experience}
Job description:
{description}

Job requirements:
{requirements}

CV:
{cv}
"""


def _extract_json(raw: str) -> dict[str, Any]:
    start = raw.find("{")
    end = raw.rfind("}") + 1
    if start == -1 or end == 0:
        raise AIServiceError("AI reply did not contain a JSON object")
    try:
        data = json.loads(raw[start:end])
    except json.JSONDecodeError as exc:
        raise AIServiceError(f"AI reply was not valid JSON: {exc}") from exc
    if not isinstance(data, dict):
        raise AIServiceError("AI reply was not a JSON object")
    return data


# timeout is the budget for every attempt together
@retry(
    max_attempts=2, base_delay=1.0,
    retryable=(openai.RateLimitError, openai.InternalServerError), budget="timeout",
)
def _call_groq(
    api_key: str, base_url: str, model: str, prompt: str, *, timeout: float, max_tokens: int
) -> str:
    client = OpenAI(api_key=api_key, base_url=base_url, timeout=timeout, max_retries=0)
    r = client.chat.completions.create(
        model=model,
        messages=[{"role": "user", "content": prompt}],
        max_tokens=max_tokens,
        temperature=0.1,
    )
    return (r.choices[0].message.content or "").strip()


class GroqClient:
    def __init__(self, api_key: str, model: str, base_url: str) -> None:
        self.api_key = api_key
        self.model = model
        self.base_url = base_url

    @classmethod
    def from_settings(cls, settings: Settings) -> GroqClient:
        return cls(settings.groq_api_key, settings.llm_model, settings.llm_base_url)

    def complete_json(self, prompt: str, *, timeout: float, max_tokens: int = 800) -> dict[str, Any]:
        if not self.api_key:
            raise AIServiceError("GROQ_API_KEY not set")
        try:
            raw = _call_groq(self.api_key, self.base_url, self.model, prompt, timeout=timeout, max_tokens=max_tokens)
        except openai.APITimeoutError as exc:
            raise AIServiceError(f"AI service timed out after {timeout:.0f}s") from exc
        except openai.OpenAIError as exc:
            raise AIServiceError(f"AI service error: {exc}") from exc
        return _extract_json(raw)


def expansion_prompt(query: str, category: str | None) -> str:
    return EXPANSION_PROMPT.format(query=query, category=category or "any")


def ats_prompt(profile_text: str, posting: Any) -> str:
    return ATS_PROMPT.format(
        title=posting.title or "",
        category=posting.category or "unspecified",
        experience=posting.experience or "unspecified",
        description=(posting.description or "")[:3000],
        requirements=(posting.requirements or "")[:2000],
        cv=profile_text[:6000],
    )
