from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
from typing import List, Literal, Optional

ReviewStatus = Literal["pending", "processing", "completed", "failed"]
QuestionType = Literal[
    "knowledge", "application", "reflection", "verification",
    "analysis", "evaluation", "synthesis",
]
QuestionDifficulty = Literal["easy", "medium", "hard"]
QuestionSource = Literal["submission", "file", "module", "trail"]

QUESTION_TYPES = ("knowledge", "application", "reflection", "verification",
                  "analysis", "evaluation", "synthesis")
DIFFICULTIES = ("easy", "medium", "hard")
SOURCES = ("submission", "file", "module", "trail")
ACTIVE_STATUSES = ("pending", "processing")
TERMINAL_STATUSES = ("completed", "failed")


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class CandidateQuestion(CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    question: str
    type: QuestionType = "knowledge"
    difficulty: QuestionDifficulty = "medium"
    rationale: str = ""
    source: QuestionSource = "module"


class Analysis(CamelModel):
    short_verdict: str
    strengths: List[str] = Field(default_factory=list)
    weaknesses: List[str] = Field(default_factory=list)
    gaps: List[str] = Field(default_factory=list)
    risk_flags: List[str] = Field(default_factory=list)
    confidence: Optional[float] = None


class Coverage(CamelModel):
    submission_text_used: bool = False
    file_used: bool = False
    module_used: bool = False
    trail_used: bool = False
    notes: str = ""


class GenerationResult(CamelModel):
    analysis: Analysis
    questions: List[CandidateQuestion]
    coverage: Coverage


class ReviewDTO(CamelModel):
    id: str
    submission_id: str
    status: ReviewStatus
    analysis: Optional[Analysis] = None
    questions: Optional[List[CandidateQuestion]] = None
    coverage: Optional[Coverage] = None
    error_message: Optional[str] = None
    started_at: Optional[str] = None
    finished_at: Optional[str] = None


class ReviewEnvelope(BaseModel):
    review: Optional[ReviewDTO] = None


class TriggerIn(BaseModel):
    model_config = ConfigDict(strict=True)

    force: bool = False


class TriggerAccepted(CamelModel):
    status: Literal["started"] = "started"
    submission_id: str
