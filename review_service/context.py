from __future__ import annotations
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Tuple
import logging

import fitz  # PyMuPDF
from sqlalchemy import text
from sqlalchemy.orm import Session

from .repository import trail_question_history
from .schemas import Coverage
from .settings import settings

logger = logging.getLogger(__name__)

TEXT_SUFFIXES = {".txt", ".md", ".py", ".js", ".ts", ".sql", ".json", ".html", ".css", ".csv"}


class ContextError(Exception):
    pass


@dataclass
class SubmissionContext:
    submission_text: Optional[str]
    file_text: Optional[str]
    file_url: Optional[str]
    github_url: Optional[str]
    deploy_url: Optional[str]
    module_title: str
    module_description: str
    module_type: str
    module_content: Optional[str]
    module_requirements: Optional[str]
    trail_title: str
    trail_description: str
    previous_questions: List[str] = field(default_factory=list)


def truncate(value: Optional[str], max_len: int) -> Optional[str]:
    if not value:
        return None
    if len(value) <= max_len:
        return value
    return value[:max_len] + f"\n\n[...текст сокращён до {max_len} символов]"


def extract_file_text(path: Path) -> Optional[str]:
    """Plain text of an attached file; ``None`` when it is missing or unreadable."""
    if not path.is_file():
        return None
    suffix = path.suffix.lower()
    try:
        if suffix == ".pdf":
            with fitz.open(str(path)) as doc:
                return "\n".join(page.get_text() for page in doc).strip() or None
        if suffix in TEXT_SUFFIXES:
            return path.read_text(encoding="utf-8", errors="replace").strip() or None
    except (OSError, RuntimeError, ValueError) as e:
        logger.warning("Не удалось прочитать файл %s: %s", path.name, e)
    return None


def collect_submission_context(db: Session, submission_id: str,
                               upload_dir: Optional[str] = None) -> Tuple[SubmissionContext, Coverage]:
    row = db.execute(
        text("""SELECT s.comment, s.file_path, s.file_url, s.github_url, s.deploy_url,
                       m.title AS module_title, m.description AS module_description,
                       m.type AS module_type, m.content, m.requirements,
                       t.title AS trail_title, t.description AS trail_description
                FROM submissions s
                JOIN modules m ON m.id = s.module_id
                JOIN trails t ON t.id = m.trail_id
                WHERE s.id=:sid"""),
        {"sid": submission_id},
    ).mappings().first()
    if not row:
        raise ContextError(f"Работа {submission_id} не найдена")

    limit = settings.max_context_chars
    file_text = None
    if row["file_path"]:
        file_text = extract_file_text(Path(upload_dir or settings.upload_dir) / row["file_path"])

    comment = row["comment"] or ""
    submission_text_used = bool(comment.strip())
    file_used = file_text is not None
    module_used = bool(row["content"] or row["requirements"] or row["module_description"])
    trail_used = bool(row["trail_title"] and row["trail_description"])

    notes = []
    if not submission_text_used:
        notes.append("Студент не оставил текстовый комментарий")
    if not (row["file_path"] or row["file_url"] or row["github_url"] or row["deploy_url"]):
        notes.append("Нет ссылок на файл, GitHub или деплой")
    elif row["file_path"] and not file_used:
        notes.append("Файл работы не удалось прочитать")
    if not row["content"]:
        notes.append("Контент модуля пуст")

    context = SubmissionContext(
        submission_text=truncate(comment, limit),
        file_text=truncate(file_text, limit),
        file_url=row["file_url"],
        github_url=row["github_url"],
        deploy_url=row["deploy_url"],
        module_title=row["module_title"],
        module_description=row["module_description"] or "",
        module_type=row["module_type"],
        module_content=truncate(row["content"], limit),
        module_requirements=truncate(row["requirements"], limit),
        trail_title=row["trail_title"],
        trail_description=truncate(row["trail_description"], 5000) or "",
        previous_questions=trail_question_history(db, submission_id),
    )
    coverage = Coverage(
        submission_text_used=submission_text_used,
        file_used=file_used,
        module_used=module_used,
        trail_used=trail_used,
        notes="; ".join(notes) or "Все основные источники доступны",
    )
    return context, coverage
