import asyncio
from typing import List, Optional

import pytest
from sqlalchemy import text

from review_service.context import SubmissionContext
from review_service.db import init_db, make_engine, make_session_factory
from review_service.main import app
from review_service.orchestrator import ReviewOrchestrator
from review_service.schemas import Analysis, CandidateQuestion, Coverage, GenerationResult
from review_service.settings import Settings


@pytest.fixture
def engine(tmp_path):
    engine = make_engine(f"sqlite:///{tmp_path / 'review.db'}")
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return make_session_factory(engine)


@pytest.fixture
def db(session_factory):
    with session_factory() as session:
        yield session


@pytest.fixture
def seed(session_factory):
    """Inserts a trail, a module and a submission; returns the submission id."""

    def _seed(submission_id: str = "sub-1", *, user_id: str = "student-1",
              trail_id: str = "trail-1", module_id: str = "mod-1",
              comment: Optional[str] = "Я реализовал REST API на FastAPI с кешированием в Redis.",
              file_path: Optional[str] = None, file_url: Optional[str] = None,
              github_url: Optional[str] = None, deploy_url: Optional[str] = None,
              content: Optional[str] = "Кеширование снижает нагрузку на базу данных.",
              requirements: Optional[str] = "Сделать REST API с кешированием.",
              teacher_visibility: str = "ASSIGNED_ONLY") -> str:
        with session_factory() as s:
            s.execute(
                text("""INSERT INTO trails (id, title, description, teacher_visibility)
                        VALUES (:id, 'Backend', 'Серверная разработка на Python', :vis)
                        ON CONFLICT (id) DO NOTHING"""),
                {"id": trail_id, "vis": teacher_visibility},
            )
            s.execute(
                text("""INSERT INTO modules (id, trail_id, title, description, type, content, requirements)
                        VALUES (:id, :tid, 'REST API', 'Проектирование API', 'practice', :content, :req)
                        ON CONFLICT (id) DO NOTHING"""),
                {"id": module_id, "tid": trail_id, "content": content, "req": requirements},
            )
            s.execute(
                text("""INSERT INTO submissions (id, module_id, user_id, comment, file_path,
                                                 file_url, github_url, deploy_url)
                        VALUES (:id, :mid, :uid, :comment, :fp, :fu, :gh, :dp)"""),
                {"id": submission_id, "mid": module_id, "uid": user_id, "comment": comment,
                 "fp": file_path, "fu": file_url, "gh": github_url, "dp": deploy_url},
            )
            s.commit()
        return submission_id

    return _seed


def make_context(**overrides) -> SubmissionContext:
    values = dict(
        submission_text="Мой ответ на задание: типизировал API клиента.",
        file_text=None,
        file_url=None,
        github_url=None,
        deploy_url=None,
        module_title="Введение в TypeScript",
        module_description="Базовые типы и интерфейсы",
        module_type="practice",
        module_content="Интерфейсы описывают форму объекта.",
        module_requirements="Типизировать клиент API",
        trail_title="Frontend",
        trail_description="Разработка интерфейсов",
        previous_questions=[],
    )
    values.update(overrides)
    return SubmissionContext(**values)


def make_result(*questions: str, confidence: Optional[float] = 80) -> GenerationResult:
    return GenerationResult(
        analysis=Analysis(short_verdict="Работа выполнена", strengths=["Чистый код"],
                          confidence=confidence),
        questions=[CandidateQuestion(question=q, type="application") for q in questions],
        coverage=Coverage(submission_text_used=True, file_used=True, module_used=True,
                          trail_used=True, notes="Работа прочитана"),
    )


class FakeGenerator:
    """Stands in for the AI model; optionally blocks until ``gate`` is set."""

    def __init__(self, result: Optional[GenerationResult] = None,
                 error: Optional[Exception] = None,
                 gate: Optional[asyncio.Event] = None,
                 available: bool = True):
        self.result = result or make_result(
            "Как ты выбирал время жизни записей в кеше для разных эндпоинтов?",
        )
        self.error = error
        self.gate = gate
        self.available = available
        self.contexts: List[SubmissionContext] = []

    @property
    def calls(self) -> int:
        return len(self.contexts)

    async def generate(self, ctx: SubmissionContext) -> GenerationResult:
        self.contexts.append(ctx)
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        return self.result


@pytest.fixture
def fake_generator():
    return FakeGenerator()


@pytest.fixture
def review_settings():
    return Settings(ai_api_key="sk-test-key-123456", stale_after_seconds=900)


@pytest.fixture
def orchestrator(session_factory, fake_generator, review_settings):
    return ReviewOrchestrator(session_factory=session_factory, generator=fake_generator,
                              cfg=review_settings)


@pytest.fixture
def api_app(orchestrator):
    app.state.orchestrator = orchestrator
    yield app
    del app.state.orchestrator


@pytest.fixture
def grant(session_factory):
    """Assigns a teacher to a trail or gives a co-admin access to it."""

    def _grant(table: str, trail_id: str, user_id: str) -> None:
        column = {"trail_teachers": "teacher_id", "admin_trail_access": "admin_id"}[table]
        with session_factory() as s:
            s.execute(text(f"INSERT INTO {table} (trail_id, {column}) VALUES (:tid, :uid)"),
                      {"tid": trail_id, "uid": user_id})
            s.commit()

    return _grant
