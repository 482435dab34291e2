"""Errors surfaced to callers of the reconciliation engine.

Malformed answer payloads and questions without options are not errors here:
a reconciliation pass turns them into the unanswered sentinel plus the
``malformed_payload`` / ``missing_option_definition`` flags on ``AnswerFlag``.
"""

from __future__ import annotations


class ReconciliationError(Exception):
    pass


class CorrectionValidationError(ReconciliationError, ValueError):
    def __init__(self, question_id: str, option_id: str, detail: str | None = None) -> None:
        message = detail or f"Option {option_id} does not belong to question {question_id}."
        super().__init__(message)
        self.question_id = question_id
        self.option_id = option_id


class StaleScoreError(ReconciliationError):
    def __init__(self, result_id: str, score_updated_at: str | None, latest_correction_at: str) -> None:
        super().__init__(
            f"Score of result {result_id} (updated {score_updated_at or 'never'}) "
            f"predates correction logged at {latest_correction_at}."
        )
        self.result_id = result_id
        self.score_updated_at = score_updated_at
        self.latest_correction_at = latest_correction_at
