from __future__ import annotations
from typing import List

from .context import SubmissionContext
from .settings import settings

SYSTEM_PROMPT = """Ты AI-ассистент для анализа практических работ студентов на образовательной платформе.

ЗАДАЧА:
1. Проанализировать сданную работу студента.
2. Сгенерировать вопросы, которые проверяют реальное понимание, а не заученные ответы.

ПРАВИЛА:
- Обращайся к студенту только на "ты": "Как ты решил...", "Почему ты выбрал...".
- Будь объективным и конструктивным, без токсичных формулировок.
- Не делай категоричных утверждений о плагиате, только отмечай риск-флаги.
- Не задавай вопросы "да/нет" и вопросы-определения вида "Что такое X?".
- Не спрашивай то, на что студент уже ответил в своей работе.
- Не повторяй вопросы из блока <previous_questions>.
- Отвечай СТРОГО валидным JSON, без markdown и пояснений вокруг.

ФОРМАТ ОТВЕТА:
{
  "analysis": {
    "shortVerdict": "краткий вердикт в 1-2 предложения",
    "strengths": ["сильная сторона"],
    "weaknesses": ["слабая сторона"],
    "gaps": ["пробел в знаниях"],
    "riskFlags": ["риск-флаг, если есть"],
    "confidence": 75
  },
  "questions": [
    {
      "question": "текст вопроса",
      "type": "knowledge|application|reflection|verification|analysis|evaluation|synthesis",
      "difficulty": "easy|medium|hard",
      "rationale": "что проверяет вопрос",
      "source": "submission|file|module|trail"
    }
  ],
  "coverage": {
    "submissionTextUsed": true,
    "fileUsed": false,
    "moduleUsed": true,
    "trailUsed": true,
    "notes": "что удалось проанализировать"
  }
}

ТРЕБОВАНИЯ К ВОПРОСАМ:
- От 3 до 7 вопросов, сначала по конкретной работе, затем по модулю и трейлу.
- Разные типы: применение, объяснение решения, альтернативы, поиск ошибок.
- confidence: 0-100, где 0 = нет данных для анализа."""


def build_user_prompt(ctx: SubmissionContext) -> str:
    sections: List[str] = []

    sections.append("<module_context>")
    sections.append(f'Трейл: "{ctx.trail_title}". {ctx.trail_description}')
    sections.append(f'Модуль: "{ctx.module_title}" (тип: {ctx.module_type})')
    sections.append(f"Описание модуля: {ctx.module_description}")
    if ctx.module_requirements:
        sections.append(f"\nТребования к работе:\n{ctx.module_requirements}")
    if ctx.module_content:
        limit = settings.max_theory_chars
        theory = ctx.module_content
        if len(theory) > limit:
            theory = theory[:limit] + "\n[...теория сокращена]"
        sections.append(f"\nТеоретический материал модуля (фрагмент):\n{theory}")
    sections.append("</module_context>")

    sections.append("\n<student_work>")
    if ctx.submission_text:
        sections.append(f"Комментарий/ответ студента:\n{ctx.submission_text}")
    else:
        sections.append("Студент не оставил текстовый комментарий.")
    if ctx.file_text:
        sections.append(f"\nТекст приложенного файла:\n{ctx.file_text}")

    links = []
    if ctx.github_url:
        links.append(f"GitHub: {ctx.github_url}")
    if ctx.deploy_url:
        links.append(f"Деплой: {ctx.deploy_url}")
    if ctx.file_url:
        links.append(f"Файл работы: {ctx.file_url}")
    if links:
        sections.append("\nСсылки работы:\n" + "\n".join(links))
    else:
        sections.append("Ссылки на работу не предоставлены.")
    sections.append("</student_work>")

    if not ctx.submission_text and not ctx.file_text and links:
        sections.append(
            "\n<context_warning>LIMITED_CONTEXT: содержимое по ссылкам недоступно, "
            "опирайся на требования модуля и снизь confidence.</context_warning>"
        )

    if ctx.previous_questions:
        sections.append("\n<previous_questions>")
        sections.extend(f"- {q}" for q in ctx.previous_questions)
        sections.append("</previous_questions>")

    sections.append("\nПроанализируй работу и сгенерируй вопросы. Ответь СТРОГО валидным JSON.")
    return "\n".join(sections)
