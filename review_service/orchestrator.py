"""Lifecycle of the AI review of a single submission.

``trigger`` claims the review record and returns at once; the analysis
runs as a background task and writes ``completed`` or ``failed`` back
to the record. At most one non-forced run per submission is in flight.
"""
from __future__ import annotations

import asyncio
import logging
import re
import time
from typing import Iterable, Optional, Set, Tuple

from sqlalchemy.orm import sessionmaker

from .context import SubmissionContext, collect_submission_context
from .db import SessionLocal
from .generator import AnthropicGenerator, ReviewGenerator
from .question_filter import FilterConfig, filter_questions
from .repository import (
    Claim, claim_review, complete_review, expire_stale_reviews, fail_review,
    get_review, to_dto,
)
from .schemas import Coverage, ReviewDTO
from .settings import Settings, settings as default_settings

logger = logging.getLogger(__name__)

_SECRET_PATTERNS = [
    (re.compile(r"sk-[A-Za-z0-9_\-]{8,}"), "***"),
    (re.compile(r"(?i)\bbearer\s+[A-Za-z0-9._\-]+"), "Bearer ***"),
    (re.compile(r"(?i)\b(api[_-]?key|x-api-key|token|secret|password)(\s*[:=]\s*)\S+"), r"\1\2***"),
]


def sanitize_error(exc: BaseException, secrets: Iterable[Optional[str]] = (), limit: int = 500) -> str:
    """Single-line error text safe to show to a teacher: no secrets, bounded length."""
    message = " ".join(str(exc).split()) or exc.__class__.__name__
    for secret in secrets:
        if secret:
            message = message.replace(secret, "***")
    for pattern, replacement in _SECRET_PATTERNS:
        message = pattern.sub(replacement, message)
    return message[:limit]


def merge_coverage(collected: Coverage, reported: Coverage) -> Coverage:
    # источник считается использованным, только если он был передан модели
    notes = collected.notes
    if reported.notes:
        notes = f"{notes}. AI: {reported.notes}"
    return Coverage(
        submission_text_used=collected.submission_text_used and reported.submission_text_used,
        file_used=collected.file_used and reported.file_used,
        module_used=collected.module_used and reported.module_used,
        trail_used=collected.trail_used and reported.trail_used,
        notes=notes,
    )


class ReviewOrchestrator:
    def __init__(self, session_factory: Optional[sessionmaker] = None,
                 generator: Optional[ReviewGenerator] = None,
                 cfg: Optional[Settings] = None):
        self.cfg = cfg or default_settings
        self.session_factory = session_factory or SessionLocal
        self.generator = generator or AnthropicGenerator(self.cfg)
        self.filter_config = FilterConfig.from_settings(self.cfg)
        self._tasks: Set[asyncio.Task] = set()

    @property
    def available(self) -> bool:
        return self.generator.available

    @property
    def in_flight(self) -> int:
        return len(self._tasks)

    async def trigger(self, submission_id: str, force: bool = False) -> Claim:
        with self.session_factory() as db:
            claim = claim_review(db, submission_id, force=force,
                                 stale_after=self.cfg.stale_after_seconds)
        if claim.started:
            task = asyncio.create_task(self.run(submission_id, claim.run_id),
                                       name=f"ai-review-{submission_id}")
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
        return claim

    async def status(self, submission_id: str) -> Optional[ReviewDTO]:
        with self.session_factory() as db:
            if self.cfg.stale_after_seconds:
                expire_stale_reviews(db, submission_id, self.cfg.stale_after_seconds)
            return to_dto(get_review(db, submission_id))

    def _collect(self, submission_id: str) -> Tuple[SubmissionContext, Coverage]:
        with self.session_factory() as db:
            return collect_submission_context(db, submission_id, self.cfg.upload_dir)

    async def run(self, submission_id: str, run_id: str) -> None:
        started = time.monotonic()
        try:
            stage = time.monotonic()
            context, coverage = await asyncio.to_thread(self._collect, submission_id)
            logger.info("[%s] контекст собран за %.0f мс", submission_id, (time.monotonic() - stage) * 1000)

            stage = time.monotonic()
            result = await self.generator.generate(context)
            logger.info("[%s] ответ модели получен за %.0f мс", submission_id, (time.monotonic() - stage) * 1000)

            outcome = filter_questions(
                result.questions,
                context.submission_text,
                context.file_text,
                context.previous_questions,
                self.filter_config,
            )

            with self.session_factory() as db:
                saved = complete_review(
                    db, submission_id, run_id,
                    analysis=result.analysis.model_dump(by_alias=True),
                    questions=[q.model_dump(by_alias=True) for q in outcome.accepted],
                    coverage=merge_coverage(coverage, result.coverage).model_dump(by_alias=True),
                )
            if saved:
                logger.info("[%s] ревью сохранено, всего %.0f мс", submission_id, (time.monotonic() - started) * 1000)
            else:
                logger.warning("[%s] запуск %s устарел, результат не сохранён", submission_id, run_id)
        except Exception as exc:
            logger.exception("[%s] AI-ревью завершилось ошибкой", submission_id)
            message = sanitize_error(exc, secrets=[self.cfg.ai_api_key], limit=self.cfg.max_error_chars)
            try:
                with self.session_factory() as db:
                    fail_review(db, submission_id, run_id, message)
            except Exception:
                logger.exception("[%s] не удалось сохранить статус failed", submission_id)

    async def wait_idle(self) -> None:
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def shutdown(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        await self.wait_idle()
