from __future__ import annotations
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional
import asyncio, logging

import httpx

from .schemas import ACTIVE_STATUSES, TERMINAL_STATUSES
from .settings import settings

logger = logging.getLogger(__name__)

POLL_ERROR = "Ошибка при загрузке статуса"
TRIGGER_ERROR = "Не удалось запустить анализ"


class ReviewPoller:
    """Follows one submission's review until it reaches a terminal status.

    Polls once right away and then every ``interval`` seconds while the
    review is pending/processing. A failed fetch keeps the last good
    snapshot and only sets ``poll_error``; the next tick retries.
    """

    def __init__(self, client: httpx.AsyncClient, submission_id: str,
                 initial: Optional[Dict[str, Any]] = None,
                 interval: Optional[float] = None,
                 on_update: Optional[Callable[[Dict[str, Any]], None]] = None):
        self.client = client
        self.submission_id = submission_id
        self.snapshot = initial
        self.interval = settings.poll_interval_seconds if interval is None else interval
        self.on_update = on_update
        self.poll_error: Optional[str] = None
        self._task: Optional[asyncio.Task] = None

    @property
    def url(self) -> str:
        return f"/v1/submissions/{self.submission_id}/ai-review"

    @property
    def is_processing(self) -> bool:
        return bool(self.snapshot) and self.snapshot.get("status") in ACTIVE_STATUSES

    @property
    def polling(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.polling or not self.is_processing:
            return
        self._task = asyncio.create_task(self._loop(), name=f"ai-review-poll-{self.submission_id}")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None

    async def wait(self) -> None:
        if self._task is not None:
            await self._task

    async def __aenter__(self) -> "ReviewPoller":
        self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()

    async def _loop(self) -> None:
        while self.is_processing:
            await self.poll_once()
            if not self.is_processing:
                break
            await asyncio.sleep(self.interval)

    async def poll_once(self) -> Optional[Dict[str, Any]]:
        try:
            resp = await self.client.get(self.url)
            resp.raise_for_status()
            data = resp.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.warning("Опрос статуса %s не удался: %s", self.submission_id, e)
            self.poll_error = POLL_ERROR
            return self.snapshot

        review = data.get("review") if isinstance(data, dict) else data
        if review is None:
            return self.snapshot
        if not isinstance(review, dict) or review.get("status") not in ACTIVE_STATUSES + TERMINAL_STATUSES:
            logger.warning("Опрос статуса %s: неожиданный ответ %r", self.submission_id, review)
            self.poll_error = POLL_ERROR
            return self.snapshot
        self._set(review)
        self.poll_error = None
        return self.snapshot

    async def trigger(self, force: bool = False) -> bool:
        self.poll_error = None
        try:
            resp = await self.client.post(self.url, json={"force": force})
            resp.raise_for_status()
        except httpx.HTTPError as e:
            logger.warning("Запуск анализа %s не удался: %s", self.submission_id, e)
            self.poll_error = TRIGGER_ERROR
            return False

        # до первого ответа сервера показываем processing
        review = dict(self.snapshot) if self.snapshot else {
            "id": "",
            "submissionId": self.submission_id,
            "coverage": None,
            "startedAt": datetime.now(timezone.utc).isoformat(),
            "finishedAt": None,
        }
        review.update(status="processing", analysis=None, questions=None, errorMessage=None)
        self._set(review)
        self.start()
        return True

    def _set(self, review: Dict[str, Any]) -> None:
        self.snapshot = review
        if self.on_update:
            self.on_update(review)
