import asyncio

import pytest
from sqlalchemy import text

from review_service.generator import GenerationError
from review_service.orchestrator import ReviewOrchestrator, merge_coverage, sanitize_error
from review_service.repository import STALE_RUN_MESSAGE
from review_service.schemas import Coverage
from review_service.settings import Settings

from conftest import FakeGenerator, make_result

CACHE_Q = "Как ты выбирал время жизни записей в кеше для разных эндпоинтов?"
INDEX_Q = "Какие индексы ты добавил в таблицу заказов и почему именно их?"


@pytest.fixture
def cfg():
    return Settings(ai_api_key="sk-live-secret-000111222", stale_after_seconds=900)


def make_orchestrator(session_factory, generator, cfg):
    return ReviewOrchestrator(session_factory=session_factory, generator=generator, cfg=cfg)


@pytest.mark.asyncio
async def test_trigger_runs_to_completion(session_factory, seed, cfg):
    sid = seed()
    orchestrator = make_orchestrator(session_factory, FakeGenerator(), cfg)

    claim = await orchestrator.trigger(sid)
    assert claim.started
    assert claim.record["status"] == "processing"

    await orchestrator.wait_idle()
    review = await orchestrator.status(sid)
    assert review.status == "completed"
    assert review.analysis.short_verdict == "Работа выполнена"
    assert [q.question for q in review.questions] == [CACHE_Q]
    assert review.finished_at is not None
    assert review.error_message is None


@pytest.mark.asyncio
async def test_status_before_trigger(session_factory, seed, cfg):
    sid = seed()
    orchestrator = make_orchestrator(session_factory, FakeGenerator(), cfg)
    assert await orchestrator.status(sid) is None


@pytest.mark.asyncio
async def test_repeated_trigger_starts_one_run(session_factory, seed, cfg):
    sid = seed()
    gate = asyncio.Event()
    generator = FakeGenerator(gate=gate)
    orchestrator = make_orchestrator(session_factory, generator, cfg)

    first = await orchestrator.trigger(sid)
    second = await orchestrator.trigger(sid)
    assert first.started
    assert not second.started
    assert orchestrator.in_flight == 1
    assert (await orchestrator.status(sid)).status == "processing"

    gate.set()
    await orchestrator.wait_idle()
    assert generator.calls == 1
    assert (await orchestrator.status(sid)).status == "completed"



@pytest.mark.asyncio
async def test_simultaneous_triggers_start_one_run(session_factory, seed, cfg):
    sid = seed()
    gate = asyncio.Event()
    generator = FakeGenerator(gate=gate)
    orchestrator = make_orchestrator(session_factory, generator, cfg)

    claims = await asyncio.gather(*[orchestrator.trigger(sid) for _ in range(5)])
    assert sum(c.started for c in claims) == 1
    assert orchestrator.in_flight == 1

    gate.set()
    await orchestrator.wait_idle()
    assert generator.calls == 1
    assert (await orchestrator.status(sid)).status == "completed"

@pytest.mark.asyncio
async def test_generation_failure_is_recorded(session_factory, seed, cfg):
    sid = seed()
    error = GenerationError("AI API error 500: upstream rejected key sk-live-secret-000111222")
    orchestrator = make_orchestrator(session_factory, FakeGenerator(error=error), cfg)

    await orchestrator.trigger(sid)
    await orchestrator.wait_idle()

    review = await orchestrator.status(sid)
    assert review.status == "failed"
    assert "AI API error 500" in review.error_message
    assert "sk-live-secret-000111222" not in review.error_message
    assert review.questions is None


@pytest.mark.asyncio
async def test_failed_review_can_be_retried(session_factory, seed, cfg):
    sid = seed()
    generator = FakeGenerator(error=GenerationError("timeout"))
    orchestrator = make_orchestrator(session_factory, generator, cfg)
    await orchestrator.trigger(sid)
    await orchestrator.wait_idle()

    generator.error = None
    claim = await orchestrator.trigger(sid)
    assert claim.started
    await orchestrator.wait_idle()
    assert (await orchestrator.status(sid)).status == "completed"


@pytest.mark.asyncio
async def test_generated_questions_are_filtered(session_factory, seed, cfg):
    sid = seed()
    result = make_result("Что такое REST API?", CACHE_Q, CACHE_Q)
    orchestrator = make_orchestrator(session_factory, FakeGenerator(result=result), cfg)

    await orchestrator.trigger(sid)
    await orchestrator.wait_idle()

    review = await orchestrator.status(sid)
    assert [q.question for q in review.questions] == [CACHE_Q]
    # файла нет, поэтому fileUsed остаётся false несмотря на ответ модели
    assert review.coverage.submission_text_used
    assert not review.coverage.file_used
    assert review.coverage.notes.endswith("AI: Работа прочитана")


@pytest.mark.asyncio
async def test_forced_rerun_skips_earlier_questions(session_factory, seed, cfg):
    sid = seed()
    generator = FakeGenerator(result=make_result(CACHE_Q))
    orchestrator = make_orchestrator(session_factory, generator, cfg)
    await orchestrator.trigger(sid)
    await orchestrator.wait_idle()

    generator.result = make_result(CACHE_Q, INDEX_Q)
    assert (await orchestrator.trigger(sid)).started is False
    claim = await orchestrator.trigger(sid, force=True)
    assert claim.started
    await orchestrator.wait_idle()

    assert generator.contexts[-1].previous_questions == [CACHE_Q]
    review = await orchestrator.status(sid)
    assert [q.question for q in review.questions] == [INDEX_Q]


@pytest.mark.asyncio
async def test_force_during_processing_keeps_newest_run(session_factory, seed, cfg):
    sid = seed()
    gate = asyncio.Event()
    generator = FakeGenerator(gate=gate)
    orchestrator = make_orchestrator(session_factory, generator, cfg)

    first = await orchestrator.trigger(sid)
    second = await orchestrator.trigger(sid, force=True)
    assert first.started and second.started
    assert orchestrator.in_flight == 2

    gate.set()
    await orchestrator.wait_idle()
    assert generator.calls == 2
    with session_factory() as db:
        run_id = db.execute(text("SELECT run_id FROM ai_submission_reviews WHERE submission_id=:sid"),
                            {"sid": sid}).scalar()
    assert run_id == second.run_id
    assert (await orchestrator.status(sid)).status == "completed"


@pytest.mark.asyncio
async def test_missing_submission_fails_cleanly(session_factory, cfg):
    orchestrator = make_orchestrator(session_factory, FakeGenerator(), cfg)
    await orchestrator.trigger("ghost")
    await orchestrator.wait_idle()
    review = await orchestrator.status("ghost")
    assert review.status == "failed"
    assert "ghost" in review.error_message


@pytest.mark.asyncio
async def test_stale_processing_reported_as_failed(session_factory, seed, cfg):
    sid = seed()
    generator = FakeGenerator(gate=asyncio.Event())
    orchestrator = make_orchestrator(session_factory, generator, cfg)
    await orchestrator.trigger(sid)
    with session_factory() as db:
        db.execute(text("UPDATE ai_submission_reviews SET started_at=0 WHERE submission_id=:sid"), {"sid": sid})
        db.commit()

    review = await orchestrator.status(sid)
    assert review.status == "failed"
    assert review.error_message == STALE_RUN_MESSAGE

    generator.gate.set()
    await orchestrator.wait_idle()
    assert (await orchestrator.status(sid)).status == "failed"


@pytest.mark.asyncio
async def test_shutdown_cancels_runs(session_factory, seed, cfg):
    sid = seed()
    orchestrator = make_orchestrator(session_factory, FakeGenerator(gate=asyncio.Event()), cfg)
    await orchestrator.trigger(sid)
    await orchestrator.shutdown()
    assert orchestrator.in_flight == 0


def test_available_follows_generator(session_factory, cfg):
    assert make_orchestrator(session_factory, FakeGenerator(), cfg).available
    assert not make_orchestrator(session_factory, FakeGenerator(available=False), cfg).available


class TestSanitizeError:
    def test_masks_configured_secret(self):
        message = sanitize_error(RuntimeError("bad key abc123XYZ"), secrets=["abc123XYZ"])
        assert message == "bad key ***"

    @pytest.mark.parametrize("raw, leaked", [
        ("auth failed: Bearer eyJhbGciOi.payload.sig", "eyJhbGciOi"),
        ("invalid sk-ant-api03-AbCdEfGhIjKl", "sk-ant-api03"),
        ("config api_key=supersecret", "supersecret"),
    ])
    def test_masks_known_patterns(self, raw, leaked):
        assert leaked not in sanitize_error(ValueError(raw))

    def test_single_line_and_bounded(self):
        message = sanitize_error(RuntimeError("line one\nline two\t" + "x" * 1000), limit=50)
        assert "\n" not in message
        assert len(message) == 50
        assert message.startswith("line one line two")

    def test_empty_message_uses_class_name(self):
        assert sanitize_error(TimeoutError()) == "TimeoutError"


def test_merge_coverage():
    collected = Coverage(submission_text_used=True, file_used=False, module_used=True,
                         trail_used=True, notes="Контент модуля пуст")
    reported = Coverage(submission_text_used=True, file_used=True, module_used=False,
                        trail_used=True, notes="Файл не открыт")
    merged = merge_coverage(collected, reported)
    assert merged.submission_text_used
    assert not merged.file_used
    assert not merged.module_used
    assert merged.trail_used
    assert merged.notes == "Контент модуля пуст. AI: Файл не открыт"

    assert merge_coverage(collected, Coverage()).notes == "Контент модуля пуст"
