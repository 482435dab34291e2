from __future__ import annotations

import logging
import sqlite3
from typing import Any

from fastapi import APIRouter, BackgroundTasks, HTTPException, Query

from ..config import settings
from ..errors import CorrectionValidationError
from ..models import (
    AnswerFlag,
    CorrectionLogEntry,
    CorrectionLogResponse,
    CorrectionRequest,
    CorrectionResponse,
    HealthResponse,
    OptionsUpdateRequest,
    OptionsUpdateResponse,
    QuestionView,
    ResultCreateRequest,
    ResultDetailResponse,
    ResultListResponse,
    ResultSummary,
    TestDefinition,
    TestDetailResponse,
)
from ..repositories import (
    create_result,
    create_test,
    get_result,
    get_test,
    has_test,
    list_corrections,
    list_result_ids_for_test,
    list_results,
    replace_question_options,
)
from ..services.aggregator import normalize_weight
from ..services.canonicalizer import canonicalize_options
from ..services.ledger import CorrectionLedger
from ..services.queue_manager import queue_manager
from ..services.reconciler import (
    Reconciliation,
    apply_correction,
    is_score_stale,
    load_questions,
    recalculate_result,
    recalculate_test_results,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1", tags=["v1"])


def _duplicates(values: list[str]) -> list[str]:
    seen: set[str] = set()
    dupes: list[str] = []
    for value in values:
        if value in seen and value not in dupes:
            dupes.append(value)
        seen.add(value)
    return dupes


def _validate_definition(definition: TestDefinition) -> None:
    duplicate_questions = _duplicates([question.id for question in definition.questions])
    if duplicate_questions:
        raise HTTPException(status_code=400, detail=f"Duplicate question ids: {duplicate_questions}")
    for question in definition.questions:
        duplicate_options = _duplicates([option.id for option in question.options])
        if duplicate_options:
            raise HTTPException(
                status_code=400,
                detail=f"Duplicate option ids in question {question.id}: {duplicate_options}",
            )


def _test_detail(test: dict[str, Any]) -> TestDetailResponse:
    views: list[QuestionView] = []
    total_weight = 0.0
    for number, question in enumerate(load_questions(test["questions"]), start=1):
        options = canonicalize_options(question.options)
        weight = normalize_weight(question.weight)
        total_weight += weight
        views.append(
            QuestionView(
                id=question.id,
                number=number,
                content=question.content,
                weight=weight,
                image_url=question.image_url,
                options=[option.to_view() for option in options.options],
                correct_label=options.correct_label,
                flags=list(options.flags) or ([AnswerFlag.missing_option_definition] if options.is_empty else []),
            )
        )
    return TestDetailResponse(id=test["id"], title=test["title"], total_weight=total_weight, questions=views)


def _detail_response(result: dict[str, Any], reconciliation: Reconciliation) -> ResultDetailResponse:
    return ResultDetailResponse(
        id=result["id"],
        test_id=result["test_id"],
        test_title=result.get("test_title"),
        student_id=result.get("student_id"),
        student_name=result.get("student_name") or "",
        image_url=result.get("image_url"),
        score=reconciliation.score,
        previous_score=result.get("previous_score"),
        correct_count=reconciliation.correct_count,
        error_count=reconciliation.error_count,
        passed=reconciliation.passed,
        payload_shape=reconciliation.payload_shape,
        answers=reconciliation.answers,
        flags=reconciliation.flags,
        modified_question_ids=reconciliation.modified_question_ids,
        correction_count=reconciliation.correction_count,
        correction_date=result["correction_date"],
        score_updated_at=result.get("score_updated_at"),
    )


def _recalculated_detail(result_id: str) -> ResultDetailResponse:
    recalculated = recalculate_result(result_id)
    if recalculated is None:
        raise HTTPException(status_code=404, detail="Result not found.")
    result, reconciliation = recalculated
    return _detail_response(result, reconciliation)


@router.post("/tests", response_model=TestDetailResponse)
async def add_test(definition: TestDefinition) -> TestDetailResponse:
    _validate_definition(definition)
    if definition.id and has_test(definition.id):
        raise HTTPException(status_code=409, detail=f"Test {definition.id} already exists.")

    try:
        test_id = create_test(
            title=definition.title,
            questions=[question.model_dump() for question in definition.questions],
            test_id=definition.id,
        )
    except sqlite3.IntegrityError as exc:
        raise HTTPException(status_code=409, detail=f"Failed to store test: {exc}") from exc

    test = get_test(test_id)
    if test is None:
        raise HTTPException(status_code=500, detail="Stored test could not be read back.")
    return _test_detail(test)


@router.get("/tests/{test_id}", response_model=TestDetailResponse)
async def read_test(test_id: str) -> TestDetailResponse:
    test = get_test(test_id)
    if not test:
        raise HTTPException(status_code=404, detail="Test not found.")
    return _test_detail(test)


@router.put("/tests/{test_id}/questions/{question_id}/options", response_model=OptionsUpdateResponse)
async def update_question_options(
    test_id: str,
    question_id: str,
    payload: OptionsUpdateRequest,
    background_tasks: BackgroundTasks,
) -> OptionsUpdateResponse:
    duplicate_options = _duplicates([option.id for option in payload.options])
    if duplicate_options:
        raise HTTPException(status_code=400, detail=f"Duplicate option ids: {duplicate_options}")
    if not has_test(test_id):
        raise HTTPException(status_code=404, detail="Test not found.")

    updated = replace_question_options(
        test_id,
        question_id,
        [option.model_dump() for option in payload.options],
    )
    if not updated:
        raise HTTPException(status_code=404, detail="Question not found for this test.")

    scheduled = len(list_result_ids_for_test(test_id))
    try:
        queued = queue_manager.enqueue_test_recalculation(test_id)
    except Exception as exc:
        logger.warning("ENQUEUE_FAILED test_id=%s error=%s", test_id, exc)
        queued = False
    if not queued:
        background_tasks.add_task(recalculate_test_results, test_id)

    return OptionsUpdateResponse(
        test_id=test_id,
        question_id=question_id,
        results_scheduled=scheduled,
        queue_mode="redis" if queued else "background",
    )


@router.post("/results", response_model=ResultDetailResponse)
async def add_result(payload: ResultCreateRequest) -> ResultDetailResponse:
    if not has_test(payload.test_id):
        raise HTTPException(status_code=404, detail="Test not found.")

    result_id = create_result(
        test_id=payload.test_id,
        raw_answers=payload.raw_answers,
        student_id=payload.student_id,
        student_name=payload.student_name,
        image_url=payload.image_url,
    )
    return _recalculated_detail(result_id)


@router.get("/results", response_model=ResultListResponse)
async def results(
    test_id: str | None = Query(default=None),
    student_id: str | None = Query(default=None),
    limit: int = Query(default=25, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
) -> ResultListResponse:
    items: list[ResultSummary] = []
    for row in list_results(test_id=test_id, student_id=student_id, limit=limit, offset=offset):
        items.append(
            ResultSummary(
                id=row["id"],
                test_id=row["test_id"],
                test_title=row.get("test_title"),
                student_id=row.get("student_id"),
                student_name=row.get("student_name") or "",
                score=row["score"],
                correct_count=row["correct_count"],
                error_count=row["error_count"],
                correction_count=row["correction_count"],
                score_stale=is_score_stale(
                    row.get("score_updated_at"),
                    row.get("latest_correction_at"),
                    row.get("options_updated_at"),
                ),
                passed=row["score"] >= settings.passing_score,
                correction_date=row["correction_date"],
                score_updated_at=row.get("score_updated_at"),
            )
        )
    return ResultListResponse(items=items)


@router.get("/results/{result_id}", response_model=ResultDetailResponse)
async def result_detail(result_id: str) -> ResultDetailResponse:
    return _recalculated_detail(result_id)


@router.post("/results/{result_id}/recalculate", response_model=ResultDetailResponse)
async def recalculate(result_id: str) -> ResultDetailResponse:
    return _recalculated_detail(result_id)


@router.post("/results/{result_id}/corrections", response_model=CorrectionResponse)
async def add_correction(result_id: str, payload: CorrectionRequest) -> CorrectionResponse:
    try:
        applied = apply_correction(
            result_id=result_id,
            question_id=payload.question_id,
            new_option_id=payload.new_option_id,
            reason=payload.reason,
        )
    except CorrectionValidationError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc

    if applied is None:
        raise HTTPException(status_code=404, detail="Result not found.")
    entry, result, reconciliation = applied
    return CorrectionResponse(entry=entry, result=_detail_response(result, reconciliation))


@router.get("/results/{result_id}/corrections", response_model=CorrectionLogResponse)
async def corrections(result_id: str) -> CorrectionLogResponse:
    if get_result(result_id) is None:
        raise HTTPException(status_code=404, detail="Result not found.")
    rows = list_corrections(result_id)
    ledger = CorrectionLedger(result_id, [CorrectionLogEntry.model_validate(row) for row in rows])
    return CorrectionLogResponse(
        result_id=result_id,
        items=ledger.entries_for_result(),
        modified_question_ids=ledger.modified_question_ids(),
    )


@router.get("/health", response_model=HealthResponse)
async def health() -> HealthResponse:
    return HealthResponse(
        status="ok",
        queue_mode=queue_manager.mode,
        passing_score=settings.passing_score,
    )
