from __future__ import annotations

import logging
import uuid
from datetime import UTC, datetime
from typing import Iterable

from ..errors import CorrectionValidationError
from ..models import CorrectionLogEntry
from .canonicalizer import CanonicalOptions
from .resolver import Resolution

logger = logging.getLogger(__name__)

LOG_CORRECTION_APPENDED = "CORRECTION_APPENDED result_id=%s question_id=%s %s -> %s entry_id=%s"

_EPOCH = datetime.min.replace(tzinfo=UTC)


def _now_iso() -> str:
    return datetime.now(UTC).isoformat()


def parse_timestamp(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=UTC)
    return parsed


class CorrectionLedger:
    """Append-only log of reviewer overrides for one test result.

    Entries are kept ordered by ``created_at``; entries with the same timestamp
    keep the order they were appended in, so the later append wins. The
    latest-per-question projection is maintained on append and never rebuilt by
    scanning.
    """

    def __init__(self, result_id: str, entries: Iterable[CorrectionLogEntry] = ()) -> None:
        self.result_id = result_id
        self._entries: list[tuple[datetime, int, CorrectionLogEntry]] = []
        self._latest: dict[str, tuple[datetime, int, CorrectionLogEntry]] = {}
        for entry in entries:
            self._insert(entry)

    def __len__(self) -> int:
        return len(self._entries)

    def _insert(self, entry: CorrectionLogEntry) -> None:
        item = (parse_timestamp(entry.created_at) or _EPOCH, len(self._entries), entry)
        self._entries.append(item)
        self._entries.sort(key=lambda row: (row[0], row[1]))

        current = self._latest.get(entry.question_id)
        if current is None or (item[0], item[1]) >= (current[0], current[1]):
            self._latest[entry.question_id] = item

    def latest_entry_for(self, question_id: str) -> CorrectionLogEntry | None:
        item = self._latest.get(question_id)
        return item[2] if item else None

    def entries_for_result(self) -> list[CorrectionLogEntry]:
        return [row[2] for row in reversed(self._entries)]

    def modified_question_ids(self) -> list[str]:
        return sorted(self._latest)

    @property
    def latest_created_at(self) -> str | None:
        if not self._entries:
            return None
        return self._entries[-1][2].created_at

    def record_correction(
        self,
        question_id: str,
        new_option_id: str,
        reason: str,
        options: CanonicalOptions,
        current: Resolution,
        created_at: str | None = None,
    ) -> CorrectionLogEntry:
        """Validate and append a correction.

        ``current`` must come from a resolver pass run against this ledger as it
        is before the append; it becomes the entry's original state.
        """
        if options.is_empty:
            raise CorrectionValidationError(
                question_id,
                new_option_id,
                detail=f"Question {question_id} has no options to correct against.",
            )
        new_option = options.by_id(new_option_id)
        if new_option is None:
            raise CorrectionValidationError(question_id, new_option_id)

        entry = CorrectionLogEntry(
            id=f"c_{uuid.uuid4().hex}",
            test_result_id=self.result_id,
            question_id=question_id,
            original_option_id=current.resolved_option_id,
            new_option_id=new_option.id,
            reason=reason,
            created_at=created_at or _now_iso(),
            original_label=current.selected_label,
            original_content=current.selected_content,
            new_label=new_option.letter,
            new_content=new_option.content,
        )
        self._insert(entry)
        logger.info(
            LOG_CORRECTION_APPENDED,
            self.result_id,
            question_id,
            entry.original_option_id,
            entry.new_option_id,
            entry.id,
        )
        return entry
