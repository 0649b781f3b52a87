from __future__ import annotations
from typing import Any, Dict, List, Optional, Protocol, Sequence
import json, logging, re

import httpx
from tenacity import AsyncRetrying, retry_if_exception, stop_after_attempt, wait_exponential_jitter

from .context import SubmissionContext
from .prompts import SYSTEM_PROMPT, build_user_prompt
from .schemas import (
    DIFFICULTIES, QUESTION_TYPES, SOURCES,
    Analysis, CandidateQuestion, Coverage, GenerationResult,
)
from .settings import Settings, settings as default_settings

logger = logging.getLogger(__name__)

_CODE_FENCE = re.compile(r"```(?:json)?\s*([\s\S]*?)```")


class GenerationError(Exception):
    pass


class ReviewGenerator(Protocol):
    @property
    def available(self) -> bool: ...

    async def generate(self, ctx: SubmissionContext) -> GenerationResult: ...


def _is_retryable(exc: BaseException) -> bool:
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code == 429 or exc.response.status_code >= 500
    return isinstance(exc, httpx.TransportError)


class AnthropicGenerator:
    """Calls the Messages API with the review prompt and parses the JSON answer."""

    def __init__(self, cfg: Optional[Settings] = None, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.cfg = cfg or default_settings
        self._transport = transport

    @property
    def available(self) -> bool:
        return bool(self.cfg.ai_api_key)

    async def generate(self, ctx: SubmissionContext) -> GenerationResult:
        raw = await self._call(build_user_prompt(ctx))
        return parse_generation(raw, self.cfg)

    async def _call(self, user_prompt: str) -> str:
        if not self.cfg.ai_api_key:
            raise GenerationError("AI API key not configured")

        headers = {
            "Content-Type": "application/json",
            "x-api-key": self.cfg.ai_api_key,
            "anthropic-version": self.cfg.anthropic_version,
        }
        body = {
            "model": self.cfg.ai_model,
            "max_tokens": self.cfg.ai_max_tokens,
            "system": SYSTEM_PROMPT,
            "messages": [{"role": "user", "content": user_prompt}],
        }
        try:
            async with httpx.AsyncClient(timeout=self.cfg.request_timeout_seconds,
                                         transport=self._transport) as client:
                async for attempt in AsyncRetrying(
                    reraise=True,
                    stop=stop_after_attempt(self.cfg.ai_max_retries),
                    wait=wait_exponential_jitter(initial=self.cfg.ai_backoff_seconds, max=30),
                    retry=retry_if_exception(_is_retryable),
                ):
                    with attempt:
                        resp = await client.post(self.cfg.ai_api_endpoint, json=body, headers=headers)
                        resp.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise GenerationError(
                f"AI API error {e.response.status_code}: {e.response.text[:200]}"
            ) from e
        except httpx.HTTPError as e:
            raise GenerationError(f"AI API request failed: {e.__class__.__name__}") from e

        try:
            content = resp.json().get("content") or []
        except ValueError as e:
            raise GenerationError("AI API returned non-JSON body") from e
        text = content[0].get("text") if content and isinstance(content[0], dict) else None
        if not text:
            raise GenerationError("Empty response from AI")
        return text


def parse_generation(raw_text: str, cfg: Optional[Settings] = None) -> GenerationResult:
    """Parse the model's answer; tolerates markdown fences and chatter around the JSON."""
    candidate = raw_text.strip()
    fenced = _CODE_FENCE.search(candidate)
    if fenced:
        candidate = fenced.group(1).strip()
    try:
        data = json.loads(candidate)
    except ValueError:
        start, end = raw_text.find("{"), raw_text.rfind("}")
        if start == -1 or end <= start:
            raise GenerationError(f"AI response is not valid JSON. Raw: {raw_text[:200]}")
        try:
            data = json.loads(raw_text[start:end + 1])
        except ValueError:
            raise GenerationError(f"Failed to parse AI response as JSON. Raw: {raw_text[:200]}")
    if not isinstance(data, dict):
        raise GenerationError("AI response JSON is not an object")
    return validate_generation(data, cfg)


def validate_generation(data: Dict[str, Any], cfg: Optional[Settings] = None) -> GenerationResult:
    """Fill in defaults for missing fields instead of failing the whole run."""
    cfg = cfg or default_settings
    analysis = data.get("analysis") if isinstance(data.get("analysis"), dict) else {}
    coverage = data.get("coverage") if isinstance(data.get("coverage"), dict) else {}
    questions = data.get("questions") if isinstance(data.get("questions"), list) else []
    limit = cfg.max_list_items

    return GenerationResult(
        analysis=Analysis(
            short_verdict=str(analysis.get("shortVerdict") or "Анализ выполнен"),
            strengths=_strings(analysis.get("strengths"), limit),
            weaknesses=_strings(analysis.get("weaknesses"), limit),
            gaps=_strings(analysis.get("gaps"), limit),
            risk_flags=_strings(analysis.get("riskFlags"), limit),
            confidence=_confidence(analysis.get("confidence")),
        ),
        questions=[
            CandidateQuestion(
                question=str(q.get("question") or ""),
                type=_choice(q.get("type"), QUESTION_TYPES, "knowledge"),
                difficulty=_choice(q.get("difficulty"), DIFFICULTIES, "medium"),
                rationale=str(q.get("rationale") or ""),
                source=_choice(q.get("source"), SOURCES, "module"),
            )
            for q in questions[:cfg.max_questions] if isinstance(q, dict)
        ],
        coverage=Coverage(
            submission_text_used=bool(coverage.get("submissionTextUsed")),
            file_used=bool(coverage.get("fileUsed")),
            module_used=bool(coverage.get("moduleUsed")),
            trail_used=bool(coverage.get("trailUsed")),
            notes=str(coverage.get("notes") or ""),
        ),
    )


def _strings(value: Any, limit: int) -> List[str]:
    if not isinstance(value, list):
        return []
    return [item for item in value if isinstance(item, str)][:limit]

def _confidence(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if number != number:  # NaN
        return None
    return min(100.0, max(0.0, number))

def _choice(value: Any, allowed: Sequence[str], fallback: str) -> str:
    return value if value in allowed else fallback
