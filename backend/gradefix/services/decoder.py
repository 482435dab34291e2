from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from numbers import Number
from typing import Any, Mapping, Union

from jsonschema import Draft202012Validator

from ..models import PayloadShape
from ..schemas import ANSWER_RECORD_JSON_SCHEMA, KEYED_PAYLOAD_JSON_SCHEMA

logger = logging.getLogger(__name__)

LOG_MALFORMED_PAYLOAD = "MALFORMED_PAYLOAD type=%s reason=%s"
LOG_SKIPPED_RECORD = "SKIPPED_ANSWER_RECORD index=%s type=%s"
LOG_IGNORED_VALUE = "IGNORED_ANSWER_VALUE path=%s reason=%s"

_QUESTION_ID_FIELDS = ("question_id", "questionId")
_NUMBER_FIELDS = ("number", "question_number")
_OPTION_ID_FIELDS = ("selected_option_id", "selectedOptionId")
_LETTER_FIELDS = ("selectedOption", "selected_option")
_EMPTY_LETTERS = {"", "-"}

_RECORD_VALIDATOR = Draft202012Validator(ANSWER_RECORD_JSON_SCHEMA)
_KEYED_VALIDATOR = Draft202012Validator(KEYED_PAYLOAD_JSON_SCHEMA)


@dataclass(frozen=True)
class RawSelection:
    option_id: str | None = None
    letter_code: str | None = None


@dataclass(frozen=True)
class SequencePayload:
    records: tuple[Mapping[str, Any], ...]
    skipped_records: int = 0
    shape: PayloadShape = PayloadShape.sequence


@dataclass(frozen=True)
class KeyedPayload:
    entries: Mapping[str, Any]
    shape: PayloadShape = PayloadShape.keyed


@dataclass(frozen=True)
class MalformedPayload:
    reason: str
    shape: PayloadShape = PayloadShape.malformed


RawAnswerPayload = Union[SequencePayload, KeyedPayload, MalformedPayload]


def decode_payload(raw: Any) -> RawAnswerPayload:
    """Classify a stored answer payload once, before any question is resolved.

    JSON text is parsed first. ``None`` is an empty sequence: a result captured
    with no answers is unanswered everywhere but not malformed.
    """
    if raw is None:
        return SequencePayload(records=())

    if isinstance(raw, (str, bytes)):
        try:
            raw = json.loads(raw)
        except ValueError as exc:
            logger.warning(LOG_MALFORMED_PAYLOAD, "text", f"invalid json: {exc}")
            return MalformedPayload(reason="invalid_json")
        if raw is None:
            return SequencePayload(records=())

    if isinstance(raw, (list, tuple)):
        records = _usable_records(raw)
        return SequencePayload(records=records, skipped_records=len(raw) - len(records))
    if isinstance(raw, Mapping):
        for error in _KEYED_VALIDATOR.iter_errors(raw):
            logger.info(LOG_IGNORED_VALUE, "/".join(str(p) for p in error.path), error.message[:120])
        return KeyedPayload(entries={str(key): value for key, value in raw.items()})

    reason = f"unsupported type {type(raw).__name__}"
    logger.warning(LOG_MALFORMED_PAYLOAD, type(raw).__name__, reason)
    return MalformedPayload(reason=reason)


def _usable_records(raw: list[Any] | tuple[Any, ...]) -> tuple[Mapping[str, Any], ...]:
    """Keep the object records of a sequence payload.

    Anything else in the list is skipped on its own. Field values of the wrong
    type are only logged here; lookups treat them as absent.
    """
    records: list[Mapping[str, Any]] = []
    for index, record in enumerate(raw):
        if not isinstance(record, Mapping):
            logger.warning(LOG_SKIPPED_RECORD, index, type(record).__name__)
            continue
        for error in _RECORD_VALIDATOR.iter_errors(record):
            logger.info(LOG_IGNORED_VALUE, f"{index}/" + "/".join(str(p) for p in error.path), error.message[:120])
        records.append(record)
    return tuple(records)


def _text(value: Any) -> str | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, Number):
        value = str(value)
    if not isinstance(value, str):
        return None
    value = value.strip()
    return value or None


def _as_number(value: Any) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value) if value.is_integer() else None
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip())
    return None


def _first_text(record: Mapping[str, Any], fields: tuple[str, ...]) -> str | None:
    for field in fields:
        value = _text(record.get(field))
        if value is not None:
            return value
    return None


def _record_matches(record: Mapping[str, Any], question_id: str, number: int) -> bool:
    for field in _QUESTION_ID_FIELDS:
        if _text(record.get(field)) == question_id:
            return True
    for field in _NUMBER_FIELDS:
        if _as_number(record.get(field)) == number:
            return True
    return False


def _selection_from_record(record: Mapping[str, Any]) -> RawSelection | None:
    option_id = _first_text(record, _OPTION_ID_FIELDS)
    letter_code = _first_text(record, _LETTER_FIELDS)
    if letter_code in _EMPTY_LETTERS:
        letter_code = None
    if option_id is None and letter_code is None:
        return None
    return RawSelection(option_id=option_id, letter_code=letter_code)


def raw_selection_for(payload: RawAnswerPayload, question_id: str, number: int) -> RawSelection | None:
    """Find what the capture pipeline stored for one question.

    ``number`` is the question's 1-based position in the test. In the sequence
    shape the first matching record wins and partial records are never merged.
    The keyed shape only ever stored option ids.
    """
    if isinstance(payload, SequencePayload):
        for record in payload.records:
            if _record_matches(record, question_id, number):
                return _selection_from_record(record)
        return None

    if isinstance(payload, KeyedPayload):
        option_id = _text(payload.entries.get(str(number)))
        if option_id is None:
            return None
        return RawSelection(option_id=option_id)

    return None
