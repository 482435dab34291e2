from __future__ import annotations

from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, conint

# Options are labelled A to Z.
MAX_OPTIONS_PER_QUESTION = 26


class ResolutionPath(str, Enum):
    override = "override"
    direct_id = "direct_id"
    letter = "letter"
    unanswered = "unanswered"


class AnswerFlag(str, Enum):
    malformed_payload = "malformed_payload"
    missing_option_definition = "missing_option_definition"
    no_correct_option = "no_correct_option"
    multiple_correct_options = "multiple_correct_options"
    unknown_option_id = "unknown_option_id"
    letter_out_of_range = "letter_out_of_range"
    override_option_missing = "override_option_missing"


class PayloadShape(str, Enum):
    sequence = "sequence"
    keyed = "keyed"
    malformed = "malformed"


class Option(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str = Field(min_length=1)
    key: str | None = Field(default=None, max_length=8)
    content: str = ""
    is_correct: bool = False


class Question(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str = Field(min_length=1)
    content: str = ""
    weight: float | None = None
    image_url: str | None = None
    options: list[Option] = Field(default_factory=list, max_length=MAX_OPTIONS_PER_QUESTION)


class TestDefinition(BaseModel):
    model_config = ConfigDict(extra="forbid")

    id: str | None = None
    title: str = Field(min_length=1, max_length=200)
    questions: list[Question] = Field(default_factory=list)


class CanonicalOptionView(BaseModel):
    id: str
    key: str | None = None
    letter: str
    ordinal: int
    content: str
    is_correct: bool


class QuestionView(BaseModel):
    id: str
    number: int
    content: str
    weight: float
    image_url: str | None = None
    options: list[CanonicalOptionView]
    correct_label: str
    flags: list[AnswerFlag] = Field(default_factory=list)


class TestDetailResponse(BaseModel):
    id: str
    title: str
    total_weight: float
    questions: list[QuestionView]


class OptionsUpdateRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    options: list[Option] = Field(min_length=1, max_length=MAX_OPTIONS_PER_QUESTION)


class OptionsUpdateResponse(BaseModel):
    test_id: str
    question_id: str
    results_scheduled: int
    queue_mode: Literal["redis", "background"]


class CorrectionLogEntry(BaseModel):
    """One immutable reviewer override.

    ``original_*`` and ``new_*`` labels and contents are snapshots taken when the
    entry was written, so the audit trail keeps showing what the reviewer saw even
    if the question's options are edited later.
    """

    model_config = ConfigDict(frozen=True)

    id: str
    test_result_id: str
    question_id: str
    original_option_id: str | None = None
    new_option_id: str
    reason: str
    created_at: str
    original_label: str | None = None
    original_content: str | None = None
    new_label: str | None = None
    new_content: str | None = None


class ResolvedAnswer(BaseModel):
    question_id: str
    number: int
    resolved_option_id: str | None = None
    selected_label: str
    selected_content: str
    is_correct: bool
    correct_label: str
    correct_content: str
    weight: float
    resolution_path: ResolutionPath
    manually_modified: bool = False
    flags: list[AnswerFlag] = Field(default_factory=list)
    question_content: str = ""
    image_url: str | None = None
    options: list[CanonicalOptionView] = Field(default_factory=list)


class ResultCreateRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    test_id: str = Field(min_length=1)
    student_id: str | None = None
    student_name: str = ""
    raw_answers: Any = None
    image_url: str | None = None


class ResultSummary(BaseModel):
    id: str
    test_id: str
    test_title: str | None = None
    student_id: str | None = None
    student_name: str = ""
    score: conint(ge=0, le=100)
    correct_count: int
    error_count: int
    correction_count: int = 0
    score_stale: bool = False
    passed: bool
    correction_date: str
    score_updated_at: str | None = None


class ResultListResponse(BaseModel):
    items: list[ResultSummary]


class ResultDetailResponse(BaseModel):
    id: str
    test_id: str
    test_title: str | None = None
    student_id: str | None = None
    student_name: str = ""
    image_url: str | None = None
    score: conint(ge=0, le=100)
    previous_score: int | None = None
    correct_count: int
    error_count: int
    passed: bool
    payload_shape: PayloadShape
    answers: list[ResolvedAnswer]
    flags: list[AnswerFlag] = Field(default_factory=list)
    modified_question_ids: list[str] = Field(default_factory=list)
    correction_count: int = 0
    correction_date: str
    score_updated_at: str | None = None


class CorrectionRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    question_id: str = Field(min_length=1)
    new_option_id: str = Field(min_length=1)
    reason: str | None = Field(default=None, max_length=500)


class CorrectionResponse(BaseModel):
    entry: CorrectionLogEntry
    result: ResultDetailResponse


class CorrectionLogResponse(BaseModel):
    result_id: str
    items: list[CorrectionLogEntry]
    modified_question_ids: list[str]


class HealthResponse(BaseModel):
    status: Literal["ok"]
    queue_mode: Literal["redis", "background"]
    passing_score: int
