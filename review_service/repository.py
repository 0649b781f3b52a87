from __future__ import annotations
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
import json, logging, time, uuid

from pydantic import ValidationError
from sqlalchemy import text
from sqlalchemy.orm import Session

from .schemas import Analysis, CandidateQuestion, Coverage, ReviewDTO

logger = logging.getLogger(__name__)

STALE_RUN_MESSAGE = "Анализ не завершился за отведённое время. Запустите его повторно."

_REVIEW_COLUMNS = """id, submission_id, status, run_id, analysis, questions, coverage,
    previous_questions, error_message, started_at, finished_at, created, updated"""


@dataclass
class Claim:
    record: Dict[str, Any]
    started: bool
    run_id: Optional[str] = None


def _dumps(data: Any) -> Optional[str]:
    return json.dumps(data, ensure_ascii=False) if data is not None else None

def _loads(raw: Optional[str]) -> Any:
    if not raw:
        return None
    try:
        return json.loads(raw)
    except ValueError:
        return None

def _iso(ts: Optional[int]) -> Optional[str]:
    if ts is None:
        return None
    return datetime.fromtimestamp(int(ts), tz=timezone.utc).isoformat()


def get_review(db: Session, submission_id: str) -> Optional[Dict[str, Any]]:
    row = db.execute(
        text(f"SELECT {_REVIEW_COLUMNS} FROM ai_submission_reviews WHERE submission_id=:sid"),
        {"sid": submission_id},
    ).mappings().first()
    return dict(row) if row else None


def claim_review(db: Session, submission_id: str, force: bool = False,
                 stale_after: int = 0) -> Claim:
    """Move the review to ``processing`` unless a run is already in flight.

    The transition is a single conditional statement, so two concurrent
    non-forced triggers cannot both win it.
    """
    if stale_after:
        expire_stale_reviews(db, submission_id, stale_after)

    now = int(time.time())
    run_id = uuid.uuid4().hex
    params = {"id": "rev_" + uuid.uuid4().hex[:24], "sid": submission_id,
              "run_id": run_id, "now": now, "force": bool(force)}

    created = db.execute(
        text("""INSERT INTO ai_submission_reviews (id, submission_id, status, run_id, started_at, created, updated)
                 VALUES (:id, :sid, 'processing', :run_id, :now, :now, :now)
                 ON CONFLICT (submission_id) DO NOTHING"""),
        params,
    ).rowcount
    started = created == 1
    if not started:
        # повтор после ошибки или принудительный перезапуск
        started = db.execute(
            text("""UPDATE ai_submission_reviews
                    SET status='processing', run_id=:run_id,
                        previous_questions=COALESCE(questions, previous_questions),
                        analysis=NULL, questions=NULL, coverage=NULL, error_message=NULL,
                        started_at=:now, finished_at=NULL, updated=:now
                    WHERE submission_id=:sid AND (status='failed' OR :force)"""),
            params,
        ).rowcount == 1
    db.commit()

    record = get_review(db, submission_id) or {}
    if started:
        logger.info("Ревью %s запущено (run=%s, force=%s)", submission_id, run_id, force)
    else:
        logger.info("Ревью %s уже в статусе %s, повторный запуск пропущен",
                    submission_id, record.get("status"))
    return Claim(record=record, started=started, run_id=run_id if started else None)


def complete_review(db: Session, submission_id: str, run_id: str,
                    analysis: Dict[str, Any], questions: List[Dict[str, Any]],
                    coverage: Dict[str, Any]) -> bool:
    now = int(time.time())
    updated = db.execute(
        text("""UPDATE ai_submission_reviews
                SET status='completed', analysis=:analysis, questions=:questions,
                    coverage=:coverage, error_message=NULL, finished_at=:now, updated=:now
                WHERE submission_id=:sid AND run_id=:run_id AND status='processing'"""),
        {"sid": submission_id, "run_id": run_id, "now": now,
         "analysis": _dumps(analysis), "questions": _dumps(questions), "coverage": _dumps(coverage)},
    ).rowcount
    db.commit()
    return updated == 1


def fail_review(db: Session, submission_id: str, run_id: str, error_message: str) -> bool:
    now = int(time.time())
    updated = db.execute(
        text("""UPDATE ai_submission_reviews
                SET status='failed', error_message=:error, finished_at=:now, updated=:now
                WHERE submission_id=:sid AND run_id=:run_id AND status='processing'"""),
        {"sid": submission_id, "run_id": run_id, "now": now, "error": error_message},
    ).rowcount
    db.commit()
    return updated == 1


def expire_stale_reviews(db: Session, submission_id: str, stale_after: int) -> bool:
    now = int(time.time())
    expired = db.execute(
        text("""UPDATE ai_submission_reviews
                SET status='failed', run_id=NULL, error_message=:error, finished_at=:now, updated=:now
                WHERE submission_id=:sid AND status IN ('pending', 'processing')
                  AND started_at < :cutoff"""),
        {"sid": submission_id, "now": now, "cutoff": now - stale_after, "error": STALE_RUN_MESSAGE},
    ).rowcount
    db.commit()
    if expired:
        logger.warning("Ревью %s зависло дольше %s с, помечено как failed", submission_id, stale_after)
    return expired == 1


def to_dto(row: Optional[Dict[str, Any]]) -> Optional[ReviewDTO]:
    if not row:
        return None
    return ReviewDTO(
        id=row["id"],
        submission_id=row["submission_id"],
        status=row["status"],
        analysis=_parse_model(Analysis, _loads(row["analysis"])),
        questions=_parse_questions(_loads(row["questions"])),
        coverage=_parse_model(Coverage, _loads(row["coverage"])),
        error_message=row["error_message"],
        started_at=_iso(row["started_at"]),
        finished_at=_iso(row["finished_at"]),
    )

def _parse_model(model, data: Any):
    if not isinstance(data, dict):
        return None
    try:
        return model.model_validate(data)
    except ValidationError:
        return None

def _parse_questions(data: Any) -> Optional[List[CandidateQuestion]]:
    if not isinstance(data, list):
        return None
    try:
        return [CandidateQuestion.model_validate(q) for q in data]
    except ValidationError:
        return None


def load_submission_ref(db: Session, submission_id: str) -> Optional[Dict[str, Any]]:
    row = db.execute(
        text("""SELECT s.id, s.user_id, s.module_id, m.trail_id
                FROM submissions s JOIN modules m ON m.id = s.module_id
                WHERE s.id=:sid"""),
        {"sid": submission_id},
    ).mappings().first()
    return dict(row) if row else None


def trail_question_history(db: Session, submission_id: str) -> List[str]:
    """Questions already asked: the replaced run of this submission plus
    completed reviews of the same student's other work in the same trail."""
    ref = load_submission_ref(db, submission_id)
    if not ref:
        return []
    own = db.execute(
        text("SELECT previous_questions FROM ai_submission_reviews WHERE submission_id=:sid"),
        {"sid": submission_id},
    ).scalar()
    others = db.execute(
        text("""SELECT r.questions FROM ai_submission_reviews r
                JOIN submissions s ON s.id = r.submission_id
                JOIN modules m ON m.id = s.module_id
                WHERE r.status='completed' AND r.questions IS NOT NULL
                  AND s.user_id=:uid AND m.trail_id=:tid AND s.id != :sid
                ORDER BY r.finished_at ASC"""),
        {"uid": ref["user_id"], "tid": ref["trail_id"], "sid": submission_id},
    ).scalars().all()

    seen, history = set(), []
    for raw in [own, *others]:
        for item in _loads(raw) or []:
            question = str(item.get("question") or "").strip() if isinstance(item, dict) else ""
            if question and question not in seen:
                seen.add(question)
                history.append(question)
    return history
