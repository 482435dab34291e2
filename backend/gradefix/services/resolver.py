from __future__ import annotations

import logging
from dataclasses import dataclass

from ..models import AnswerFlag, CorrectionLogEntry, ResolutionPath
from .canonicalizer import CanonicalOption, CanonicalOptions
from .decoder import RawSelection

logger = logging.getLogger(__name__)

NO_SELECTION_LABEL = "-"
NO_SELECTION_CONTENT = "No selection"


@dataclass(frozen=True)
class Resolution:
    question_id: str
    option: CanonicalOption | None
    path: ResolutionPath
    selected_label: str
    selected_content: str
    flags: tuple[AnswerFlag, ...] = ()

    @property
    def resolved_option_id(self) -> str | None:
        return self.option.id if self.option else None

    @property
    def is_correct(self) -> bool:
        return bool(self.option and self.option.is_correct)


def normalize_letter(letter_code: str) -> str:
    cleaned = letter_code.strip()
    return cleaned[:1].upper()


def _resolved(question_id: str, option: CanonicalOption, path: ResolutionPath, flags: list[AnswerFlag]) -> Resolution:
    return Resolution(
        question_id=question_id,
        option=option,
        path=path,
        selected_label=option.letter,
        selected_content=option.content,
        flags=tuple(flags),
    )


def _unanswered(
    question_id: str,
    flags: list[AnswerFlag],
    label: str = NO_SELECTION_LABEL,
    content: str = NO_SELECTION_CONTENT,
) -> Resolution:
    return Resolution(
        question_id=question_id,
        option=None,
        path=ResolutionPath.unanswered,
        selected_label=label,
        selected_content=content,
        flags=tuple(flags),
    )


def resolve_answer(
    question_id: str,
    selection: RawSelection | None,
    options: CanonicalOptions,
    correction: CorrectionLogEntry | None = None,
) -> Resolution:
    """Decide which option a student ended up with for one question.

    Rules apply in strict order and exactly one of them produces the result:
    reviewer override, raw option id, raw letter (key/letter first, then the
    letter's alphabet offset into the canonical order), unanswered. Anomalies
    become flags on an unanswered resolution; nothing here raises.
    """
    flags: list[AnswerFlag] = []

    if options.is_empty:
        logger.warning("MISSING_OPTIONS question_id=%s", question_id)
        return _unanswered(question_id, [AnswerFlag.missing_option_definition])

    if correction is not None:
        option = options.by_id(correction.new_option_id)
        if option is not None:
            return _resolved(question_id, option, ResolutionPath.override, flags)
        logger.warning(
            "OVERRIDE_OPTION_MISSING question_id=%s option_id=%s entry_id=%s",
            question_id,
            correction.new_option_id,
            correction.id,
        )
        return _unanswered(question_id, [AnswerFlag.override_option_missing])

    if selection is None:
        return _unanswered(question_id, flags)

    if selection.option_id:
        option = options.by_id(selection.option_id)
        if option is not None:
            return _resolved(question_id, option, ResolutionPath.direct_id, flags)
        flags.append(AnswerFlag.unknown_option_id)

    if selection.letter_code:
        letter = normalize_letter(selection.letter_code)
        if letter:
            option = options.by_letter(letter)
            if option is None and "A" <= letter <= "Z":
                option = options.at(ord(letter) - ord("A"))
            if option is not None:
                return _resolved(question_id, option, ResolutionPath.letter, flags)
            flags.append(AnswerFlag.letter_out_of_range)
            return _unanswered(question_id, flags, label=letter, content=f"Option {letter} (Content not found)")

    return _unanswered(question_id, flags)
