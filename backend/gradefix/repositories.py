from __future__ import annotations

import json
import sqlite3
import uuid
from datetime import UTC, datetime
from typing import Any

from .db import get_connection, transaction


def _now_iso() -> str:
    return datetime.now(UTC).isoformat()


def _insert_options(
    conn: sqlite3.Connection,
    test_id: str,
    question_id: str,
    options: list[dict[str, Any]],
) -> None:
    for position, option in enumerate(options):
        conn.execute(
            """
            INSERT INTO question_options (test_id, question_id, id, position, option_key, content, is_correct)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                test_id,
                question_id,
                option["id"],
                position,
                option.get("key"),
                option.get("content") or "",
                1 if option.get("is_correct") else 0,
            ),
        )


def create_test(title: str, questions: list[dict[str, Any]], test_id: str | None = None) -> str:
    test_id = test_id or f"t_{uuid.uuid4().hex}"
    with transaction() as conn:
        conn.execute(
            "INSERT INTO tests (id, title, created_at) VALUES (?, ?, ?)",
            (test_id, title, _now_iso()),
        )
        for position, question in enumerate(questions):
            conn.execute(
                """
                INSERT INTO questions (test_id, id, position, content, weight, image_url)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    test_id,
                    question["id"],
                    position,
                    question.get("content") or "",
                    question.get("weight"),
                    question.get("image_url"),
                ),
            )
            _insert_options(conn, test_id, question["id"], question.get("options") or [])
    return test_id


def has_test(test_id: str) -> bool:
    with get_connection() as conn:
        row = conn.execute("SELECT 1 FROM tests WHERE id = ?", (test_id,)).fetchone()
        return row is not None


def _questions_for_test(conn: sqlite3.Connection, test_id: str) -> list[dict[str, Any]]:
    question_rows = conn.execute(
        """
        SELECT id, content, weight, image_url
        FROM questions
        WHERE test_id = ?
        ORDER BY position ASC
        """,
        (test_id,),
    ).fetchall()
    option_rows = conn.execute(
        """
        SELECT question_id, id, option_key, content, is_correct
        FROM question_options
        WHERE test_id = ?
        ORDER BY position ASC
        """,
        (test_id,),
    ).fetchall()

    options_by_question: dict[str, list[dict[str, Any]]] = {}
    for row in option_rows:
        options_by_question.setdefault(row["question_id"], []).append(
            {
                "id": row["id"],
                "key": row["option_key"],
                "content": row["content"],
                "is_correct": bool(row["is_correct"]),
            }
        )

    return [
        {
            "id": row["id"],
            "content": row["content"],
            "weight": row["weight"],
            "image_url": row["image_url"],
            "options": options_by_question.get(row["id"], []),
        }
        for row in question_rows
    ]


def get_test(test_id: str) -> dict[str, Any] | None:
    with get_connection() as conn:
        row = conn.execute("SELECT id, title, created_at FROM tests WHERE id = ?", (test_id,)).fetchone()
        if not row:
            return None
        test = dict(row)
        test["questions"] = _questions_for_test(conn, test_id)
        return test


def replace_question_options(test_id: str, question_id: str, options: list[dict[str, Any]]) -> bool:
    with transaction() as conn:
        row = conn.execute(
            "SELECT 1 FROM questions WHERE test_id = ? AND id = ?",
            (test_id, question_id),
        ).fetchone()
        if row is None:
            return False
        conn.execute(
            "DELETE FROM question_options WHERE test_id = ? AND question_id = ?",
            (test_id, question_id),
        )
        _insert_options(conn, test_id, question_id, options)
        conn.execute("UPDATE tests SET options_updated_at = ? WHERE id = ?", (_now_iso(), test_id))
    return True


def create_result(
    test_id: str,
    raw_answers: Any,
    student_id: str | None = None,
    student_name: str = "",
    image_url: str | None = None,
) -> str:
    result_id = f"r_{uuid.uuid4().hex}"
    raw_json = None if raw_answers is None else json.dumps(raw_answers, ensure_ascii=False)
    with transaction() as conn:
        conn.execute(
            """
            INSERT INTO test_results (
                id, test_id, student_id, student_name, raw_answers_json, score,
                correct_count, error_count, image_url, correction_date, score_updated_at
            ) VALUES (?, ?, ?, ?, ?, 0, 0, 0, ?, ?, NULL)
            """,
            (result_id, test_id, student_id, student_name, raw_json, image_url, _now_iso()),
        )
    return result_id


def _result_from_row(row: sqlite3.Row) -> dict[str, Any]:
    result = dict(row)
    raw_json = result.pop("raw_answers_json", None)
    result["raw_answers"] = json.loads(raw_json) if raw_json else None
    return result


_RESULT_COLUMNS = """
    r.id, r.test_id, r.student_id, r.student_name, r.raw_answers_json, r.score,
    r.correct_count, r.error_count, r.image_url, r.correction_date, r.score_updated_at,
    t.title AS test_title
"""


def get_result(result_id: str) -> dict[str, Any] | None:
    with get_connection() as conn:
        row = conn.execute(
            f"""
            SELECT {_RESULT_COLUMNS}
            FROM test_results r
            LEFT JOIN tests t ON t.id = r.test_id
            WHERE r.id = ?
            """,
            (result_id,),
        ).fetchone()
        if not row:
            return None
        return _result_from_row(row)


def _corrections_for_result(conn: sqlite3.Connection, result_id: str) -> list[dict[str, Any]]:
    rows = conn.execute(
        """
        SELECT id, test_result_id, question_id, original_option_id, new_option_id, reason,
               created_at, original_label, original_content, new_label, new_content
        FROM correction_logs
        WHERE test_result_id = ?
        ORDER BY created_at ASC, rowid ASC
        """,
        (result_id,),
    ).fetchall()
    return [dict(row) for row in rows]


def list_corrections(result_id: str) -> list[dict[str, Any]]:
    with get_connection() as conn:
        return _corrections_for_result(conn, result_id)


def load_result_snapshot(result_id: str) -> dict[str, Any] | None:
    """Read a result, its test's questions and its corrections in one transaction."""
    conn = get_connection()
    try:
        conn.execute("BEGIN")
        row = conn.execute(
            f"""
            SELECT {_RESULT_COLUMNS}
            FROM test_results r
            LEFT JOIN tests t ON t.id = r.test_id
            WHERE r.id = ?
            """,
            (result_id,),
        ).fetchone()
        if not row:
            return None
        result = _result_from_row(row)
        return {
            "result": result,
            "questions": _questions_for_test(conn, result["test_id"]),
            "corrections": _corrections_for_result(conn, result_id),
        }
    finally:
        conn.rollback()
        conn.close()


def append_correction(entry: dict[str, Any]) -> None:
    with transaction() as conn:
        conn.execute(
            """
            INSERT INTO correction_logs (
                id, test_result_id, question_id, original_option_id, new_option_id, reason,
                created_at, original_label, original_content, new_label, new_content
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                entry["id"],
                entry["test_result_id"],
                entry["question_id"],
                entry.get("original_option_id"),
                entry["new_option_id"],
                entry["reason"],
                entry["created_at"],
                entry.get("original_label"),
                entry.get("original_content"),
                entry.get("new_label"),
                entry.get("new_content"),
            ),
        )


def save_recalculated_score(
    result_id: str,
    score: int,
    correct_count: int,
    error_count: int,
) -> dict[str, Any]:
    score_updated_at = _now_iso()
    with transaction() as conn:
        conn.execute(
            """
            UPDATE test_results
            SET score = ?, correct_count = ?, error_count = ?, score_updated_at = ?
            WHERE id = ?
            """,
            (score, correct_count, error_count, score_updated_at, result_id),
        )
    return {
        "score": score,
        "correct_count": correct_count,
        "error_count": error_count,
        "score_updated_at": score_updated_at,
    }


def list_result_ids_for_test(test_id: str) -> list[str]:
    with get_connection() as conn:
        rows = conn.execute(
            "SELECT id FROM test_results WHERE test_id = ? ORDER BY correction_date ASC",
            (test_id,),
        ).fetchall()
        return [row["id"] for row in rows]


def list_results(
    test_id: str | None = None,
    student_id: str | None = None,
    limit: int = 50,
    offset: int = 0,
) -> list[dict[str, Any]]:
    clauses: list[str] = []
    params: list[Any] = []
    if test_id:
        clauses.append("r.test_id = ?")
        params.append(test_id)
    if student_id:
        clauses.append("r.student_id = ?")
        params.append(student_id)
    where = f"WHERE {' AND '.join(clauses)}" if clauses else ""

    with get_connection() as conn:
        rows = conn.execute(
            f"""
            SELECT r.id, r.test_id, t.title AS test_title, r.student_id, r.student_name,
                   r.score, r.correct_count, r.error_count, r.correction_date, r.score_updated_at,
                   COUNT(c.id) AS correction_count,
                   t.options_updated_at,
                   MAX(c.created_at) AS latest_correction_at
            FROM test_results r
            LEFT JOIN tests t ON t.id = r.test_id
            LEFT JOIN correction_logs c ON c.test_result_id = r.id
            {where}
            GROUP BY r.id
            ORDER BY r.correction_date DESC
            LIMIT ? OFFSET ?
            """,
            (*params, limit, offset),
        ).fetchall()
        return [dict(row) for row in rows]
