from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Iterable

from ..config import settings
from ..errors import CorrectionValidationError, StaleScoreError
from ..models import (
    AnswerFlag,
    CorrectionLogEntry,
    PayloadShape,
    Question,
    ResolvedAnswer,
)
from ..repositories import (
    append_correction,
    list_result_ids_for_test,
    load_result_snapshot,
    save_recalculated_score,
)
from .aggregator import aggregate, normalize_weight
from .canonicalizer import CanonicalOptions, canonicalize_options
from .decoder import MalformedPayload, RawAnswerPayload, decode_payload, raw_selection_for
from .ledger import CorrectionLedger, parse_timestamp
from .resolver import Resolution, resolve_answer

logger = logging.getLogger(__name__)

LOG_SCORE_WRITTEN = "SCORE_WRITTEN result_id=%s score=%s previous=%s corrections=%s"
LOG_STALE_SCORE = "STALE_SCORE result_id=%s score_updated_at=%s latest_correction_at=%s"


@dataclass(frozen=True)
class Reconciliation:
    result_id: str
    score: int
    correct_count: int
    error_count: int
    passed: bool
    payload_shape: PayloadShape
    answers: list[ResolvedAnswer]
    flags: list[AnswerFlag] = field(default_factory=list)
    modified_question_ids: list[str] = field(default_factory=list)
    correction_count: int = 0


def load_questions(rows: Iterable[dict[str, Any] | Question]) -> list[Question]:
    return [row if isinstance(row, Question) else Question.model_validate(row) for row in rows]


def _ledger_from_rows(result_id: str, rows: Iterable[dict[str, Any]]) -> CorrectionLedger:
    return CorrectionLedger(result_id, [CorrectionLogEntry.model_validate(row) for row in rows])


def _find_question(questions: list[Question], question_id: str) -> tuple[int, Question] | None:
    for number, question in enumerate(questions, start=1):
        if question.id == question_id:
            return number, question
    return None


def _resolve_question(
    payload: RawAnswerPayload,
    question: Question,
    number: int,
    options: CanonicalOptions,
    ledger: CorrectionLedger,
) -> Resolution:
    selection = raw_selection_for(payload, question.id, number)
    return resolve_answer(question.id, selection, options, ledger.latest_entry_for(question.id))


def reconcile(
    result_id: str,
    raw_answers: Any,
    questions: Iterable[dict[str, Any] | Question],
    ledger: CorrectionLedger,
    passing_score: int | None = None,
) -> Reconciliation:
    """Run one full decode, resolve and aggregate pass over a consistent snapshot.

    The pass is pure: the same raw answers, questions and ledger always give the
    same reconciliation. Question numbers are 1-based positions in ``questions``.
    """
    question_models = load_questions(questions)
    payload = decode_payload(raw_answers)
    modified = set(ledger.modified_question_ids())

    answers: list[ResolvedAnswer] = []
    result_flags: list[AnswerFlag] = []
    if isinstance(payload, MalformedPayload):
        result_flags.append(AnswerFlag.malformed_payload)

    for number, question in enumerate(question_models, start=1):
        options = canonicalize_options(question.options)
        resolution = _resolve_question(payload, question, number, options, ledger)

        flags = list(options.flags) + [flag for flag in resolution.flags if flag not in options.flags]
        if isinstance(payload, MalformedPayload):
            flags.insert(0, AnswerFlag.malformed_payload)

        answers.append(
            ResolvedAnswer(
                question_id=question.id,
                number=number,
                resolved_option_id=resolution.resolved_option_id,
                selected_label=resolution.selected_label,
                selected_content=resolution.selected_content,
                is_correct=resolution.is_correct,
                correct_label=options.correct_label,
                correct_content=options.correct_content,
                weight=normalize_weight(question.weight),
                resolution_path=resolution.path,
                manually_modified=question.id in modified,
                flags=flags,
                question_content=question.content,
                image_url=question.image_url,
                options=[option.to_view() for option in options.options],
            )
        )
        for flag in flags:
            if flag not in result_flags:
                result_flags.append(flag)

    summary = aggregate(answers, passing_score=passing_score)
    return Reconciliation(
        result_id=result_id,
        score=summary.score,
        correct_count=summary.correct_count,
        error_count=summary.error_count,
        passed=summary.passed,
        payload_shape=payload.shape,
        answers=answers,
        flags=result_flags,
        modified_question_ids=sorted(modified),
        correction_count=len(ledger),
    )


def record_correction(
    raw_answers: Any,
    questions: Iterable[dict[str, Any] | Question],
    ledger: CorrectionLedger,
    question_id: str,
    new_option_id: str,
    reason: str | None = None,
    created_at: str | None = None,
) -> CorrectionLogEntry:
    """Append a reviewer override to ``ledger`` and return the new entry.

    The original state recorded on the entry is what the resolver produces for
    the question with the ledger as it stands before this append. Raises
    ``CorrectionValidationError`` when the option is not one of the question's.
    """
    located = _find_question(load_questions(questions), question_id)
    if located is None:
        raise CorrectionValidationError(
            question_id,
            new_option_id,
            detail=f"Question {question_id} is not part of this test.",
        )
    number, question = located
    options = canonicalize_options(question.options)
    current = _resolve_question(decode_payload(raw_answers), question, number, options, ledger)

    return ledger.record_correction(
        question_id=question_id,
        new_option_id=new_option_id,
        reason=(reason or "").strip() or settings.correction_reason,
        options=options,
        current=current,
        created_at=created_at,
    )


def assert_score_current(result: dict[str, Any], ledger: CorrectionLedger) -> None:
    """Raise ``StaleScoreError`` if the stored score predates the latest correction."""
    latest = ledger.latest_created_at
    if latest is not None and is_score_stale(result.get("score_updated_at"), latest):
        raise StaleScoreError(result["id"], result.get("score_updated_at"), latest)


def is_score_stale(
    score_updated_at: str | None,
    latest_correction_at: str | None,
    options_updated_at: str | None = None,
) -> bool:
    """A stored score is stale once a correction or an option edit is newer than it."""
    changes = [
        parsed
        for parsed in (parse_timestamp(latest_correction_at), parse_timestamp(options_updated_at))
        if parsed is not None
    ]
    if not changes:
        return False
    updated_at = parse_timestamp(score_updated_at)
    return updated_at is None or updated_at < max(changes)


def recalculate_result(result_id: str) -> tuple[dict[str, Any], Reconciliation] | None:
    """Recalculation trigger: reconcile a stored result and persist its score.

    This is the only code path that writes ``test_results.score``.
    """
    snapshot = load_result_snapshot(result_id)
    if snapshot is None:
        return None

    result = snapshot["result"]
    ledger = _ledger_from_rows(result_id, snapshot["corrections"])
    try:
        assert_score_current(result, ledger)
    except StaleScoreError:
        logger.warning(LOG_STALE_SCORE, result_id, result.get("score_updated_at"), ledger.latest_created_at)

    reconciliation = reconcile(result_id, result["raw_answers"], snapshot["questions"], ledger)
    updated = save_recalculated_score(
        result_id,
        score=reconciliation.score,
        correct_count=reconciliation.correct_count,
        error_count=reconciliation.error_count,
    )
    logger.info(LOG_SCORE_WRITTEN, result_id, reconciliation.score, result.get("score"), len(ledger))
    merged = dict(result)
    merged.update(updated)
    merged["previous_score"] = result.get("score")
    return merged, reconciliation


def apply_correction(
    result_id: str,
    question_id: str,
    new_option_id: str,
    reason: str | None = None,
) -> tuple[CorrectionLogEntry, dict[str, Any], Reconciliation] | None:
    """Append a correction, then recalculate.

    The two writes are not atomic. If recalculation fails the entry stays and the
    stored score is stale until the next recalculation, which every result read
    performs.
    """
    snapshot = load_result_snapshot(result_id)
    if snapshot is None:
        return None

    result = snapshot["result"]
    ledger = _ledger_from_rows(result_id, snapshot["corrections"])
    entry = record_correction(
        raw_answers=result["raw_answers"],
        questions=snapshot["questions"],
        ledger=ledger,
        question_id=question_id,
        new_option_id=new_option_id,
        reason=reason,
    )
    append_correction(entry.model_dump())

    recalculated = recalculate_result(result_id)
    if recalculated is None:
        return None
    updated, reconciliation = recalculated
    return entry, updated, reconciliation


def recalculate_test_results(test_id: str) -> int:
    count = 0
    for result_id in list_result_ids_for_test(test_id):
        if recalculate_result(result_id) is not None:
            count += 1
    logger.info("TEST_RECALCULATED test_id=%s results=%s", test_id, count)
    return count
