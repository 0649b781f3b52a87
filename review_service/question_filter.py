"""Post-processing filter for generated review questions.

Drops questions that are empty, trivial (yes/no or bare "what is X"),
already answered by the student's own text, or repeat something asked
before. The prompt asks the model to avoid these too; this is the net
under it.
"""
from __future__ import annotations

import logging, re
from dataclasses import dataclass, field
from enum import Enum
from typing import AbstractSet, FrozenSet, Iterable, List, Optional, Sequence, Set, Tuple

from .schemas import CandidateQuestion
from .settings import Settings, settings as default_settings

logger = logging.getLogger(__name__)

_NON_WORD = re.compile(r"[^\w\s]|_")

# маркеры да/нет могут стоять в любом месте вопроса
_POLAR_PARTICLES = re.compile(
    r"(?:^|\s)(?:правда ли|верно ли|является ли|используешь ли|знаешь ли|"
    r"есть ли|был ли|была ли|было ли|были ли|"
    r"is it true that|is it correct that|do you have)(?:\s|$)"
)
# «ты …» считается маркером только в начале вопроса
_POLAR_OPENERS = re.compile(
    r"^(?:ты использовал|ты применил|ты знаком|ты знаешь|ты слышал)(?:\s|$)"
)
_DEFINITION = re.compile(r"^(?:что такое|что значит|what is|what are)\s")


class RejectReason(str, Enum):
    EMPTY_OR_SHORT = "EMPTY_OR_SHORT"
    TRIVIAL = "TRIVIAL"
    ALREADY_ANSWERED = "ALREADY_ANSWERED"
    DUPLICATE_SURFACE = "DUPLICATE_SURFACE"
    DUPLICATE_WITHIN_BATCH = "DUPLICATE_WITHIN_BATCH"


@dataclass(frozen=True)
class FilterConfig:
    min_question_chars: int = 10
    min_source_chars: int = 20
    min_keywords: int = 3
    keyword_min_length: int = 3
    answered_threshold: float = 0.7
    near_duplicate_threshold: float = 0.8
    definition_max_words: int = 8

    @classmethod
    def from_settings(cls, s: Optional[Settings] = None) -> "FilterConfig":
        s = s or default_settings
        return cls(
            min_question_chars=s.min_question_chars,
            min_source_chars=s.min_source_chars,
            min_keywords=s.min_keywords,
            keyword_min_length=s.keyword_min_length,
            answered_threshold=s.answered_threshold,
            near_duplicate_threshold=s.near_duplicate_threshold,
            definition_max_words=s.definition_max_words,
        )


DEFAULT_CONFIG = FilterConfig()


@dataclass
class FilterOutcome:
    total_candidates: int
    accepted: List[CandidateQuestion] = field(default_factory=list)
    rejected: List[Tuple[CandidateQuestion, RejectReason]] = field(default_factory=list)

    @property
    def rejected_reasons(self) -> Set[RejectReason]:
        return {reason for _, reason in self.rejected}


def normalize(text: Optional[str]) -> str:
    """Lowercase, turn punctuation into spaces, collapse whitespace."""
    if not text:
        return ""
    return " ".join(_NON_WORD.sub(" ", text.lower()).split())


def extract_keywords(text: Optional[str], min_length: int = 3) -> Set[str]:
    """Tokens longer than ``min_length`` characters; short function words are noise."""
    return {w for w in normalize(text).split() if len(w) > min_length}


def overlap_ratio(keys_a: AbstractSet[str], keys_b: AbstractSet[str]) -> float:
    """Share of ``keys_a`` found in ``keys_b``.

    The denominator is the question being judged, not the union: the
    question is "how much of this vocabulary is already covered".
    """
    if not keys_a:
        return 0.0
    return len(keys_a & keys_b) / len(keys_a)


def is_trivial(question: str, config: FilterConfig = DEFAULT_CONFIG) -> bool:
    normalized = normalize(question)
    if _POLAR_PARTICLES.search(normalized) or _POLAR_OPENERS.search(normalized):
        return True
    # «Что такое X?» без уточнений
    if _DEFINITION.match(normalized) and len(normalized.split()) < config.definition_max_words:
        return True
    return False


def is_likely_answered(question: str, source_text: Optional[str],
                       config: FilterConfig = DEFAULT_CONFIG) -> bool:
    if not source_text or len(source_text.strip()) < config.min_source_chars:
        return False
    q_keys = extract_keywords(question, config.keyword_min_length)
    if len(q_keys) < config.min_keywords:
        return False
    source_keys = extract_keywords(source_text, config.keyword_min_length)
    return overlap_ratio(q_keys, source_keys) >= config.answered_threshold


@dataclass(frozen=True)
class _Fingerprint:
    normalized: str
    keywords: FrozenSet[str]

    @classmethod
    def of(cls, text: str, config: FilterConfig) -> "_Fingerprint":
        return cls(normalize(text), frozenset(extract_keywords(text, config.keyword_min_length)))


def _matches_any(fp: _Fingerprint, pool: Sequence[_Fingerprint], config: FilterConfig) -> bool:
    for other in pool:
        if fp.normalized == other.normalized:
            return True
        if len(fp.keywords) < config.min_keywords or len(other.keywords) < config.min_keywords:
            continue
        if overlap_ratio(fp.keywords, other.keywords) >= config.near_duplicate_threshold:
            return True
    return False


def is_duplicate(question: str, previous_questions: Sequence[str],
                 config: FilterConfig = DEFAULT_CONFIG) -> bool:
    if not previous_questions:
        return False
    pool = [_Fingerprint.of(prev, config) for prev in previous_questions]
    return _matches_any(_Fingerprint.of(question, config), pool, config)


def filter_questions(
    candidates: Iterable[CandidateQuestion],
    submission_text: Optional[str],
    file_text: Optional[str],
    previous_questions: Sequence[str],
    config: Optional[FilterConfig] = None,
) -> FilterOutcome:
    """Single ordered pass; within a batch the first of two near-duplicates wins."""
    config = config or DEFAULT_CONFIG
    candidates = list(candidates)
    outcome = FilterOutcome(total_candidates=len(candidates))
    previous_pool = [_Fingerprint.of(prev, config) for prev in previous_questions]
    batch_pool: List[_Fingerprint] = []

    for candidate in candidates:
        text = candidate.question or ""
        if len(text.strip()) < config.min_question_chars:
            reason = RejectReason.EMPTY_OR_SHORT
        elif is_trivial(text, config):
            reason = RejectReason.TRIVIAL
        elif (is_likely_answered(text, submission_text, config)
              or is_likely_answered(text, file_text, config)):
            reason = RejectReason.ALREADY_ANSWERED
        else:
            fp = _Fingerprint.of(text, config)
            if previous_pool and _matches_any(fp, previous_pool, config):
                reason = RejectReason.DUPLICATE_SURFACE
            elif _matches_any(fp, batch_pool, config):
                reason = RejectReason.DUPLICATE_WITHIN_BATCH
            else:
                outcome.accepted.append(candidate)
                batch_pool.append(fp)
                continue
        outcome.rejected.append((candidate, reason))

    logger.info(
        "Фильтр вопросов: всего %s, принято %s, отклонено %s (%s)",
        outcome.total_candidates,
        len(outcome.accepted),
        len(outcome.rejected),
        ", ".join(sorted(r.value for r in outcome.rejected_reasons)) or "-",
    )
    return outcome
