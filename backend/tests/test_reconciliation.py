from __future__ import annotations

import os
import sys
import tempfile
import unittest
from pathlib import Path

os.environ.setdefault("GRADEFIX_DB_PATH", str(Path(tempfile.mkdtemp()) / "gradefix-test.db"))
sys.path.append(str(Path(__file__).resolve().parents[1]))

from pydantic import ValidationError

from gradefix.errors import CorrectionValidationError, StaleScoreError
from gradefix.models import (
    AnswerFlag,
    CorrectionLogEntry,
    Option,
    PayloadShape,
    Question,
    ResolutionPath,
    ResolvedAnswer,
)
from gradefix.services.aggregator import aggregate, normalize_weight, weighted_score
from gradefix.services.canonicalizer import canonicalize_options
from gradefix.services.decoder import (
    KeyedPayload,
    MalformedPayload,
    RawSelection,
    SequencePayload,
    decode_payload,
    raw_selection_for,
)
from gradefix.services.ledger import CorrectionLedger
from gradefix.services.reconciler import assert_score_current, is_score_stale, reconcile, record_correction
from gradefix.services.resolver import NO_SELECTION_CONTENT, resolve_answer


KEYED_OPTIONS = [
    Option(id="o1", key="A", content="x", is_correct=False),
    Option(id="o2", key="B", content="y", is_correct=True),
]

UNKEYED_OPTIONS = [
    Option(id="o4", content="four"),
    Option(id="o2", content="two"),
    Option(id="o3", content="three", is_correct=True),
    Option(id="o1", content="one"),
]


def _entry(question_id: str, new_option_id: str, created_at: str, entry_id: str = "c1") -> CorrectionLogEntry:
    return CorrectionLogEntry(
        id=entry_id,
        test_result_id="r1",
        question_id=question_id,
        new_option_id=new_option_id,
        reason="review",
        created_at=created_at,
    )


def _answer(weight: float | None, is_correct: bool) -> ResolvedAnswer:
    return ResolvedAnswer(
        question_id="q",
        number=1,
        selected_label="-",
        selected_content=NO_SELECTION_CONTENT,
        is_correct=is_correct,
        correct_label="A",
        correct_content="x",
        weight=normalize_weight(weight),
        resolution_path=ResolutionPath.letter if is_correct else ResolutionPath.unanswered,
    )


def _question(question_id: str, options: list[Option], weight: float | None = None) -> dict:
    return {
        "id": question_id,
        "content": f"Question {question_id}",
        "weight": weight,
        "options": [option.model_dump() for option in options],
    }


class CanonicalizerTestCase(unittest.TestCase):
    def test_orders_by_key_and_labels_with_key(self) -> None:
        canonical = canonicalize_options(list(reversed(KEYED_OPTIONS)))
        self.assertEqual([option.id for option in canonical.options], ["o1", "o2"])
        self.assertEqual([option.letter for option in canonical.options], ["A", "B"])
        self.assertEqual(canonical.correct_option.id, "o2")
        self.assertEqual(canonical.flags, ())

    def test_falls_back_to_id_order_without_keys(self) -> None:
        canonical = canonicalize_options(UNKEYED_OPTIONS)
        self.assertEqual([option.id for option in canonical.options], ["o1", "o2", "o3", "o4"])
        self.assertEqual([option.letter for option in canonical.options], ["A", "B", "C", "D"])
        self.assertEqual([option.ordinal for option in canonical.options], [0, 1, 2, 3])

    def test_deterministic_for_any_input_order(self) -> None:
        mixed = [
            Option(id="p1", key="B", content="b"),
            Option(id="p2", content="unkeyed"),
            Option(id="p3", key="A", content="a"),
            Option(id="p0", key="A", content="duplicate key"),
        ]
        expected = canonicalize_options(mixed)
        for permutation in (mixed[::-1], mixed[1:] + mixed[:1], [mixed[2], mixed[0], mixed[3], mixed[1]]):
            self.assertEqual(canonicalize_options(permutation), expected)

    def test_idempotent(self) -> None:
        first = canonicalize_options(UNKEYED_OPTIONS)
        again = canonicalize_options(
            [Option(id=o.id, key=o.key, content=o.content, is_correct=o.is_correct) for o in first.options]
        )
        self.assertEqual(
            [(o.id, o.letter, o.ordinal) for o in again.options],
            [(o.id, o.letter, o.ordinal) for o in first.options],
        )

    def test_duplicate_keys_break_ties_by_id(self) -> None:
        canonical = canonicalize_options(
            [Option(id="z", key="A", content="z"), Option(id="a", key="A", content="a")]
        )
        self.assertEqual([option.id for option in canonical.options], ["a", "z"])

    def test_no_correct_option_is_flagged_not_raised(self) -> None:
        canonical = canonicalize_options([Option(id="o1", key="A", content="x")])
        self.assertIsNone(canonical.correct_option)
        self.assertEqual(canonical.correct_label, "?")
        self.assertEqual(canonical.correct_content, "Unknown")
        self.assertIn(AnswerFlag.no_correct_option, canonical.flags)

    def test_more_options_than_letters_is_rejected(self) -> None:
        options = [{"id": f"o{index:02d}", "content": str(index)} for index in range(27)]
        with self.assertRaises(ValidationError):
            Question(id="q1", options=options)
        question = Question(id="q1", options=options[:26])
        self.assertEqual(canonicalize_options(question.options).at(25).letter, "Z")

    def test_multiple_correct_options_takes_first(self) -> None:
        canonical = canonicalize_options(
            [
                Option(id="o2", key="B", content="y", is_correct=True),
                Option(id="o1", key="A", content="x", is_correct=True),
            ]
        )
        self.assertEqual(canonical.correct_option.id, "o1")
        self.assertIn(AnswerFlag.multiple_correct_options, canonical.flags)


class DecoderTestCase(unittest.TestCase):
    def test_detects_shapes(self) -> None:
        self.assertIsInstance(decode_payload([{"question_id": "q1"}]), SequencePayload)
        self.assertIsInstance(decode_payload({"1": "o1"}), KeyedPayload)
        self.assertIsInstance(decode_payload('[{"number": 1}]'), SequencePayload)
        self.assertIsInstance(decode_payload(None), SequencePayload)
        self.assertIsInstance(decode_payload(42), MalformedPayload)
        self.assertIsInstance(decode_payload("not json"), MalformedPayload)
        self.assertIsInstance(decode_payload([1, 2, 3]), SequencePayload)
        self.assertIsInstance(decode_payload({"1": ["o1"]}), KeyedPayload)

    def test_sequence_first_match_wins_without_merging(self) -> None:
        payload = decode_payload(
            [
                {"number": 2, "selectedOption": "C"},
                {"question_id": "q2", "selected_option_id": "o9"},
            ]
        )
        self.assertEqual(raw_selection_for(payload, "q2", 2), RawSelection(letter_code="C"))

    def test_sequence_matches_camel_case_and_numeric_strings(self) -> None:
        payload = decode_payload(
            [
                {"questionId": "q1", "selectedOptionId": "o1", "selected_option": "a"},
                {"question_number": "3", "selected_option": " d "},
            ]
        )
        self.assertEqual(raw_selection_for(payload, "q1", 1), RawSelection(option_id="o1", letter_code="a"))
        self.assertEqual(raw_selection_for(payload, "q3", 3), RawSelection(letter_code="d"))
        self.assertIsNone(raw_selection_for(payload, "q2", 2))

    def test_dash_letter_means_no_selection(self) -> None:
        payload = decode_payload([{"question_id": "q1", "selectedOption": "-"}])
        self.assertIsNone(raw_selection_for(payload, "q1", 1))

    def test_keyed_map_looks_up_by_number(self) -> None:
        payload = decode_payload({"1": "o1", "2": "", "3": None})
        self.assertEqual(raw_selection_for(payload, "q1", 1), RawSelection(option_id="o1"))
        self.assertIsNone(raw_selection_for(payload, "q2", 2))
        self.assertIsNone(raw_selection_for(payload, "q3", 3))
        self.assertIsNone(raw_selection_for(payload, "q4", 4))

    def test_malformed_payload_yields_nothing(self) -> None:
        self.assertIsNone(raw_selection_for(decode_payload(3.5), "q1", 1))

    def test_non_object_records_are_skipped_individually(self) -> None:
        payload = decode_payload([None, {"question_id": "q1", "selected_option_id": "o2"}, "B", 7])
        self.assertIsInstance(payload, SequencePayload)
        self.assertEqual(payload.skipped_records, 3)
        self.assertEqual(raw_selection_for(payload, "q1", 1), RawSelection(option_id="o2"))

    def test_wrongly_typed_values_are_treated_as_absent(self) -> None:
        payload = decode_payload(
            [
                {"question_id": "q1", "selected_option_id": "o2"},
                {"question_id": "q2", "selectedOption": True},
                {"question_id": "q3", "selected_option_id": ["o1"], "selectedOption": "a"},
            ]
        )
        self.assertEqual(raw_selection_for(payload, "q1", 1), RawSelection(option_id="o2"))
        self.assertIsNone(raw_selection_for(payload, "q2", 2))
        self.assertEqual(raw_selection_for(payload, "q3", 3), RawSelection(letter_code="a"))

        keyed = decode_payload({"1": "o2", "2": ["o2"], "3": {"id": "o1"}})
        self.assertEqual(raw_selection_for(keyed, "q1", 1), RawSelection(option_id="o2"))
        self.assertIsNone(raw_selection_for(keyed, "q2", 2))
        self.assertIsNone(raw_selection_for(keyed, "q3", 3))


class ResolverTestCase(unittest.TestCase):
    def test_sequence_letter_resolves_to_keyed_option(self) -> None:
        payload = decode_payload([{"question_id": "q1", "selectedOption": "b"}])
        resolution = resolve_answer(
            "q1",
            raw_selection_for(payload, "q1", 1),
            canonicalize_options(KEYED_OPTIONS),
        )
        self.assertEqual(resolution.resolved_option_id, "o2")
        self.assertTrue(resolution.is_correct)
        self.assertEqual(resolution.path, ResolutionPath.letter)
        self.assertEqual(resolution.selected_content, "y")

    def test_keyed_map_resolves_directly_by_id(self) -> None:
        payload = decode_payload({"1": "o1"})
        resolution = resolve_answer("q1", raw_selection_for(payload, "q1", 1), canonicalize_options(KEYED_OPTIONS))
        self.assertEqual(resolution.resolved_option_id, "o1")
        self.assertEqual(resolution.path, ResolutionPath.direct_id)
        self.assertEqual(resolution.selected_label, "A")
        self.assertFalse(resolution.is_correct)

    def test_letter_falls_back_to_position(self) -> None:
        resolution = resolve_answer(
            "q1",
            RawSelection(letter_code="C"),
            canonicalize_options(UNKEYED_OPTIONS),
        )
        self.assertEqual(resolution.resolved_option_id, "o3")
        self.assertEqual(resolution.option.ordinal, 2)
        self.assertTrue(resolution.is_correct)

    def test_out_of_range_letter_is_unanswered(self) -> None:
        resolution = resolve_answer("q1", RawSelection(letter_code="F"), canonicalize_options(UNKEYED_OPTIONS))
        self.assertIsNone(resolution.resolved_option_id)
        self.assertEqual(resolution.path, ResolutionPath.unanswered)
        self.assertEqual(resolution.selected_content, "Option F (Content not found)")
        self.assertIn(AnswerFlag.letter_out_of_range, resolution.flags)

    def test_override_beats_raw_selection(self) -> None:
        options = canonicalize_options(UNKEYED_OPTIONS)
        resolution = resolve_answer(
            "q1",
            RawSelection(option_id="o1"),
            options,
            _entry("q1", "o3", "2026-01-01T00:00:00+00:00"),
        )
        self.assertEqual(resolution.resolved_option_id, "o3")
        self.assertEqual(resolution.path, ResolutionPath.override)

    def test_override_to_removed_option_is_flagged(self) -> None:
        resolution = resolve_answer(
            "q1",
            RawSelection(option_id="o1"),
            canonicalize_options(KEYED_OPTIONS),
            _entry("q1", "gone", "2026-01-01T00:00:00+00:00"),
        )
        self.assertIsNone(resolution.resolved_option_id)
        self.assertIn(AnswerFlag.override_option_missing, resolution.flags)

    def test_unknown_id_falls_through_to_letter(self) -> None:
        resolution = resolve_answer(
            "q1",
            RawSelection(option_id="stale", letter_code="A"),
            canonicalize_options(KEYED_OPTIONS),
        )
        self.assertEqual(resolution.resolved_option_id, "o1")
        self.assertEqual(resolution.path, ResolutionPath.letter)
        self.assertIn(AnswerFlag.unknown_option_id, resolution.flags)

    def test_no_information_is_unanswered(self) -> None:
        resolution = resolve_answer("q1", None, canonicalize_options(KEYED_OPTIONS))
        self.assertIsNone(resolution.resolved_option_id)
        self.assertEqual(resolution.selected_content, "No selection")
        self.assertFalse(resolution.is_correct)

    def test_missing_options_resolve_unanswered_with_flag(self) -> None:
        resolution = resolve_answer("q1", RawSelection(option_id="o1"), canonicalize_options([]))
        self.assertEqual(resolution.path, ResolutionPath.unanswered)
        self.assertIn(AnswerFlag.missing_option_definition, resolution.flags)

    def test_resolved_option_always_belongs_to_question(self) -> None:
        options = canonicalize_options(UNKEYED_OPTIONS)
        selections = [
            None,
            RawSelection(option_id="o2"),
            RawSelection(option_id="elsewhere"),
            RawSelection(letter_code="b"),
            RawSelection(letter_code="Z"),
            RawSelection(letter_code="?"),
            RawSelection(option_id="elsewhere", letter_code="d"),
        ]
        for selection in selections:
            resolution = resolve_answer("q1", selection, options)
            self.assertIn(resolution.path, set(ResolutionPath))
            if resolution.resolved_option_id is not None:
                self.assertIn(resolution.resolved_option_id, options.ids())


class AggregatorTestCase(unittest.TestCase):
    def test_weighted_score(self) -> None:
        answers = [_answer(1, True), _answer(1, True), _answer(2, False), _answer(1, True)]
        summary = aggregate(answers)
        self.assertEqual(summary.score, 60)
        self.assertEqual(summary.correct_count, 3)
        self.assertEqual(summary.error_count, 1)

    def test_non_positive_weights_clamp_to_one(self) -> None:
        self.assertEqual(normalize_weight(0), 1.0)
        self.assertEqual(normalize_weight(-3), 1.0)
        self.assertEqual(normalize_weight(None), 1.0)
        self.assertEqual(normalize_weight(float("nan")), 1.0)
        self.assertEqual(normalize_weight(2.5), 2.5)

    def test_zero_total_weight_scores_zero(self) -> None:
        summary = aggregate([])
        self.assertEqual(summary.score, 0)
        self.assertFalse(summary.passed)
        self.assertEqual(weighted_score(0.0, 0.0), 0)

    def test_rounds_half_up(self) -> None:
        self.assertEqual(weighted_score(1.0, 8.0), 13)
        self.assertEqual(weighted_score(5.0, 8.0), 63)
        self.assertEqual(weighted_score(2.0, 3.0), 67)

    def test_passing_threshold(self) -> None:
        self.assertTrue(aggregate([_answer(1, True)], passing_score=70).passed)
        self.assertFalse(aggregate([_answer(1, False)], passing_score=70).passed)


class CorrectionLedgerTestCase(unittest.TestCase):
    def test_latest_entry_wins_by_created_at(self) -> None:
        ledger = CorrectionLedger(
            "r1",
            [
                _entry("q1", "o2", "2026-03-02T10:00:00+00:00", "c2"),
                _entry("q1", "o1", "2026-03-01T10:00:00+00:00", "c1"),
            ],
        )
        self.assertEqual(ledger.latest_entry_for("q1").id, "c2")
        self.assertIsNone(ledger.latest_entry_for("q9"))
        self.assertEqual([entry.id for entry in ledger.entries_for_result()], ["c2", "c1"])

    def test_same_timestamp_later_append_wins(self) -> None:
        stamp = "2026-03-01T10:00:00+00:00"
        ledger = CorrectionLedger("r1", [_entry("q1", "o1", stamp, "c1"), _entry("q1", "o2", stamp, "c2")])
        self.assertEqual(ledger.latest_entry_for("q1").id, "c2")

    def test_modified_questions_flagged_once(self) -> None:
        ledger = CorrectionLedger(
            "r1",
            [
                _entry("q2", "o1", "2026-03-01T10:00:00+00:00", "c1"),
                _entry("q2", "o2", "2026-03-01T11:00:00+00:00", "c2"),
                _entry("q1", "o2", "2026-03-01T12:00:00+00:00", "c3"),
            ],
        )
        self.assertEqual(ledger.modified_question_ids(), ["q1", "q2"])
        self.assertEqual(ledger.latest_created_at, "2026-03-01T12:00:00+00:00")

    def test_entries_are_immutable(self) -> None:
        entry = _entry("q1", "o1", "2026-03-01T10:00:00+00:00")
        with self.assertRaises(ValidationError):
            entry.new_option_id = "o2"  # type: ignore[misc]


class ReconcileTestCase(unittest.TestCase):
    def _questions(self) -> list[dict]:
        return [
            _question("q1", KEYED_OPTIONS, weight=1),
            _question("q2", UNKEYED_OPTIONS, weight=1),
            _question("q3", KEYED_OPTIONS, weight=2),
            _question("q4", UNKEYED_OPTIONS, weight=1),
        ]

    def test_full_pass_scores_weighted(self) -> None:
        raw = [
            {"question_id": "q1", "selectedOption": "B"},
            {"number": 2, "selected_option_id": "o3"},
            {"question_id": "q3", "selectedOption": "A"},
            {"question_number": 4, "selectedOption": "c"},
        ]
        reconciliation = reconcile("r1", raw, self._questions(), CorrectionLedger("r1"))
        self.assertEqual(reconciliation.payload_shape, PayloadShape.sequence)
        self.assertEqual([a.is_correct for a in reconciliation.answers], [True, True, False, True])
        self.assertEqual(reconciliation.score, 60)
        self.assertEqual([a.number for a in reconciliation.answers], [1, 2, 3, 4])
        self.assertEqual(reconciliation.answers[0].correct_label, "B")

    def test_is_idempotent(self) -> None:
        raw = {"1": "o2", "3": "o1"}
        ledger = CorrectionLedger("r1", [_entry("q2", "o3", "2026-03-01T10:00:00+00:00")])
        first = reconcile("r1", raw, self._questions(), ledger)
        second = reconcile("r1", raw, self._questions(), ledger)
        self.assertEqual(first, second)

    def test_override_changes_score(self) -> None:
        raw = {"1": "o1"}
        questions = [_question("q1", KEYED_OPTIONS)]
        before = reconcile("r1", raw, questions, CorrectionLedger("r1"))
        ledger = CorrectionLedger("r1", [_entry("q1", "o2", "2026-03-01T10:00:00+00:00")])
        after = reconcile("r1", raw, questions, ledger)
        self.assertEqual(before.score, 0)
        self.assertEqual(after.score, 100)
        self.assertTrue(after.answers[0].manually_modified)
        self.assertEqual(after.answers[0].resolution_path, ResolutionPath.override)
        self.assertEqual(after.modified_question_ids, ["q1"])

    def test_malformed_payload_degrades_to_unanswered(self) -> None:
        reconciliation = reconcile("r1", 17, self._questions(), CorrectionLedger("r1"))
        self.assertEqual(reconciliation.payload_shape, PayloadShape.malformed)
        self.assertEqual(reconciliation.score, 0)
        self.assertIn(AnswerFlag.malformed_payload, reconciliation.flags)
        self.assertTrue(all(a.resolved_option_id is None for a in reconciliation.answers))

    def test_bad_record_only_affects_its_own_question(self) -> None:
        raw = [
            {"question_id": "q1", "selected_option_id": "o2"},
            None,
            {"question_id": "q2", "selectedOption": True},
        ]
        reconciliation = reconcile("r1", raw, self._questions(), CorrectionLedger("r1"))
        self.assertEqual(reconciliation.payload_shape, PayloadShape.sequence)
        self.assertNotIn(AnswerFlag.malformed_payload, reconciliation.flags)
        self.assertEqual(reconciliation.answers[0].resolved_option_id, "o2")
        self.assertIsNone(reconciliation.answers[1].resolved_option_id)
        self.assertEqual(reconciliation.score, 20)

        keyed = reconcile("r1", {"1": "o2", "2": ["o3"]}, self._questions(), CorrectionLedger("r1"))
        self.assertEqual(keyed.payload_shape, PayloadShape.keyed)
        self.assertEqual(keyed.answers[0].resolved_option_id, "o2")
        self.assertEqual(keyed.score, 20)

    def test_question_without_options_does_not_abort_pass(self) -> None:
        questions = [_question("q1", []), _question("q2", KEYED_OPTIONS)]
        reconciliation = reconcile("r1", {"1": "o1", "2": "o2"}, questions, CorrectionLedger("r1"))
        self.assertIn(AnswerFlag.missing_option_definition, reconciliation.answers[0].flags)
        self.assertTrue(reconciliation.answers[1].is_correct)
        self.assertEqual(reconciliation.score, 50)

    def test_no_questions_scores_zero(self) -> None:
        reconciliation = reconcile("r1", [], [], CorrectionLedger("r1"))
        self.assertEqual(reconciliation.score, 0)
        self.assertEqual(reconciliation.answers, [])


class RecordCorrectionTestCase(unittest.TestCase):
    def _questions(self) -> list[dict]:
        return [_question("q1", KEYED_OPTIONS), _question("q2", UNKEYED_OPTIONS)]

    def test_captures_original_from_prior_ledger_state(self) -> None:
        ledger = CorrectionLedger("r1")
        first = record_correction({"1": "o1"}, self._questions(), ledger, "q1", "o2", reason="smudge")
        self.assertEqual(first.original_option_id, "o1")
        self.assertEqual(first.original_content, "x")
        self.assertEqual(first.new_label, "B")
        self.assertEqual(first.reason, "smudge")

        second = record_correction({"1": "o1"}, self._questions(), ledger, "q1", "o1")
        self.assertEqual(second.original_option_id, "o2")
        self.assertEqual(second.reason, "Manual Correction by Teacher")
        self.assertEqual(len(ledger), 2)
        self.assertEqual(ledger.latest_entry_for("q1").id, second.id)
        self.assertEqual(first.new_option_id, "o2")

    def test_unanswered_original_is_recorded_as_null(self) -> None:
        ledger = CorrectionLedger("r1")
        entry = record_correction([], self._questions(), ledger, "q2", "o3")
        self.assertIsNone(entry.original_option_id)
        self.assertEqual(entry.original_content, NO_SELECTION_CONTENT)

    def test_foreign_option_is_rejected_without_append(self) -> None:
        ledger = CorrectionLedger("r1")
        with self.assertRaises(CorrectionValidationError):
            record_correction({"1": "o1"}, self._questions(), ledger, "q1", "o3")
        with self.assertRaises(CorrectionValidationError):
            record_correction({"1": "o1"}, self._questions(), ledger, "q9", "o1")
        self.assertEqual(len(ledger), 0)

    def test_stale_score_detected(self) -> None:
        ledger = CorrectionLedger("r1", [_entry("q1", "o2", "2026-03-01T10:00:00+00:00")])
        with self.assertRaises(StaleScoreError):
            assert_score_current({"id": "r1", "score_updated_at": "2026-03-01T09:00:00+00:00"}, ledger)
        with self.assertRaises(StaleScoreError):
            assert_score_current({"id": "r1", "score_updated_at": None}, ledger)
        assert_score_current({"id": "r1", "score_updated_at": "2026-03-01T11:00:00+00:00"}, ledger)
        assert_score_current({"id": "r1", "score_updated_at": None}, CorrectionLedger("r1"))

    def test_option_edit_makes_score_stale(self) -> None:
        scored = "2026-03-01T10:00:00+00:00"
        self.assertTrue(is_score_stale(scored, None, "2026-03-01T11:00:00+00:00"))
        self.assertFalse(is_score_stale(scored, None, "2026-03-01T09:00:00+00:00"))
        self.assertTrue(is_score_stale(scored, "2026-03-01T09:00:00+00:00", "2026-03-01T11:00:00+00:00"))
        self.assertFalse(is_score_stale(scored, None, None))


if __name__ == "__main__":
    unittest.main()
