from __future__ import annotations

from dataclasses import dataclass
from functools import cmp_to_key
from typing import Iterable

from ..models import AnswerFlag, CanonicalOptionView, Option

UNKNOWN_CORRECT_LABEL = "?"
UNKNOWN_CORRECT_CONTENT = "Unknown"


@dataclass(frozen=True)
class CanonicalOption:
    id: str
    key: str | None
    letter: str
    ordinal: int
    content: str
    is_correct: bool

    def to_view(self) -> CanonicalOptionView:
        return CanonicalOptionView(
            id=self.id,
            key=self.key,
            letter=self.letter,
            ordinal=self.ordinal,
            content=self.content,
            is_correct=self.is_correct,
        )


@dataclass(frozen=True)
class CanonicalOptions:
    options: tuple[CanonicalOption, ...]
    correct_option: CanonicalOption | None
    flags: tuple[AnswerFlag, ...] = ()

    @property
    def is_empty(self) -> bool:
        return not self.options

    @property
    def correct_label(self) -> str:
        return self.correct_option.letter if self.correct_option else UNKNOWN_CORRECT_LABEL

    @property
    def correct_content(self) -> str:
        return self.correct_option.content if self.correct_option else UNKNOWN_CORRECT_CONTENT

    def by_id(self, option_id: str | None) -> CanonicalOption | None:
        if not option_id:
            return None
        for option in self.options:
            if option.id == option_id:
                return option
        return None

    def by_letter(self, letter: str) -> CanonicalOption | None:
        for option in self.options:
            if option.letter == letter:
                return option
        return None

    def at(self, ordinal: int) -> CanonicalOption | None:
        if 0 <= ordinal < len(self.options):
            return self.options[ordinal]
        return None

    def ids(self) -> set[str]:
        return {option.id for option in self.options}


def _clean_key(value: str | None) -> str:
    if value is None:
        return ""
    return str(value).strip()


def _compare_options(first: Option, second: Option) -> int:
    first_key = _clean_key(first.key)
    second_key = _clean_key(second.key)
    if first_key and second_key:
        left, right = first_key, second_key
    else:
        left, right = first.id, second.id
    return (left > right) - (left < right)


def letter_for_ordinal(ordinal: int) -> str:
    return chr(65 + ordinal)


def canonicalize_options(options: Iterable[Option]) -> CanonicalOptions:
    """Put a question's options in canonical order and label them.

    Options compare by ``key`` when both carry one, otherwise by ``id``. The
    comparator alone is not transitive on mixed keyed/unkeyed data, so options
    are first ordered by ``id`` and then stably sorted with it; the result only
    depends on the set of options, never on the order they were stored in.
    Equal keys therefore also fall back to ``id`` order.
    """
    by_id = sorted(options, key=lambda option: option.id)
    ordered = sorted(by_id, key=cmp_to_key(_compare_options))

    canonical: list[CanonicalOption] = []
    for ordinal, option in enumerate(ordered):
        key = _clean_key(option.key) or None
        canonical.append(
            CanonicalOption(
                id=option.id,
                key=key,
                letter=key or letter_for_ordinal(ordinal),
                ordinal=ordinal,
                content=option.content,
                is_correct=bool(option.is_correct),
            )
        )

    correct = [option for option in canonical if option.is_correct]
    flags: list[AnswerFlag] = []
    if canonical and not correct:
        flags.append(AnswerFlag.no_correct_option)
    elif len(correct) > 1:
        flags.append(AnswerFlag.multiple_correct_options)

    return CanonicalOptions(
        options=tuple(canonical),
        correct_option=correct[0] if correct else None,
        flags=tuple(flags),
    )
