import logging
from contextlib import asynccontextmanager
import uvicorn
from fastapi import Depends, FastAPI, Header, HTTPException, Request
from sqlalchemy.orm import Session

from .access import Actor, has_trail_access, is_privileged
from .db import init_db
from .orchestrator import ReviewOrchestrator
from .repository import load_submission_ref
from .schemas import ReviewEnvelope, TriggerAccepted, TriggerIn
from .settings import settings

logger = logging.getLogger(__name__)

@asynccontextmanager
async def lifespan(app: FastAPI):
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    if not hasattr(app.state, "orchestrator"):
        init_db()
        app.state.orchestrator = ReviewOrchestrator()
    logger.info("Сервис AI-ревью запущен, генератор %s",
                "настроен" if app.state.orchestrator.available else "не настроен")
    yield
    await app.state.orchestrator.shutdown()

app = FastAPI(title="AI Submission Review Service", version="1.0.0", lifespan=lifespan)


def get_db(request: Request):
    db = request.app.state.orchestrator.session_factory()
    try:
        yield db
    finally:
        db.close()

def get_actor(x_user_id: str | None = Header(default=None),
              x_user_role: str | None = Header(default=None)) -> Actor:
    # аутентификация выполняется шлюзом, сюда приходят проверенные заголовки
    if not x_user_id or not is_privileged(x_user_role):
        raise HTTPException(status_code=403, detail="Доступ запрещён")
    return Actor(user_id=x_user_id, role=x_user_role)

def get_orchestrator(request: Request) -> ReviewOrchestrator:
    return request.app.state.orchestrator

def ensure_enabled() -> None:
    if not settings.ai_review_enabled:
        raise HTTPException(status_code=404, detail="AI-анализ отключён")

def _authorize(db: Session, actor: Actor, submission_id: str) -> None:
    ref = load_submission_ref(db, submission_id)
    if not ref:
        raise HTTPException(status_code=404, detail="Работа не найдена")
    if not has_trail_access(db, actor, ref["trail_id"]):
        raise HTTPException(status_code=403, detail="Нет доступа")


@app.get("/healthz")
def healthz():
    return {"status": "ok"}

# Текущее состояние ревью для опроса клиентом
@app.get("/v1/submissions/{submission_id}/ai-review", response_model=ReviewEnvelope,
         dependencies=[Depends(ensure_enabled)])
async def get_ai_review(submission_id: str,
                        actor: Actor = Depends(get_actor),
                        db: Session = Depends(get_db),
                        orchestrator: ReviewOrchestrator = Depends(get_orchestrator)):
    _authorize(db, actor, submission_id)
    return ReviewEnvelope(review=await orchestrator.status(submission_id))

# Запуск или перезапуск анализа; отвечаем сразу, работа идёт в фоне
@app.post("/v1/submissions/{submission_id}/ai-review", response_model=TriggerAccepted,
          dependencies=[Depends(ensure_enabled)])
async def trigger_ai_review(submission_id: str, request: Request,
                            actor: Actor = Depends(get_actor),
                            db: Session = Depends(get_db),
                            orchestrator: ReviewOrchestrator = Depends(get_orchestrator)):
    if not orchestrator.available:
        raise HTTPException(status_code=503, detail="AI-сервис не настроен")
    _authorize(db, actor, submission_id)

    force = False
    try:
        force = TriggerIn.model_validate(await request.json()).force
    except ValueError:
        pass  # пустое или невалидное тело: обычный запуск

    await orchestrator.trigger(submission_id, force=force)
    return TriggerAccepted(submission_id=submission_id)

def run() -> None:
    uvicorn.run("review_service.main:app", host="0.0.0.0", port=8080)
