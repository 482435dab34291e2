from __future__ import annotations

import sqlite3
from contextlib import contextmanager
from pathlib import Path

from .config import settings


def _resolve(path: Path) -> Path:
    if path.is_absolute():
        return path
    return (settings.base_dir / path).resolve()


def ensure_paths() -> None:
    _resolve(settings.db_path).parent.mkdir(parents=True, exist_ok=True)


def get_connection() -> sqlite3.Connection:
    ensure_paths()
    conn = sqlite3.connect(_resolve(settings.db_path))
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    return conn


@contextmanager
def transaction() -> sqlite3.Connection:
    conn = get_connection()
    try:
        yield conn
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()


def init_db() -> None:
    with transaction() as conn:
        conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS tests (
                id TEXT PRIMARY KEY,
                title TEXT NOT NULL,
                created_at TEXT NOT NULL,
                options_updated_at TEXT
            );

            CREATE TABLE IF NOT EXISTS questions (
                test_id TEXT NOT NULL,
                id TEXT NOT NULL,
                position INTEGER NOT NULL,
                content TEXT NOT NULL,
                weight REAL,
                image_url TEXT,
                PRIMARY KEY (test_id, id),
                FOREIGN KEY (test_id) REFERENCES tests(id) ON DELETE CASCADE
            );

            CREATE TABLE IF NOT EXISTS question_options (
                test_id TEXT NOT NULL,
                question_id TEXT NOT NULL,
                id TEXT NOT NULL,
                position INTEGER NOT NULL,
                option_key TEXT,
                content TEXT NOT NULL,
                is_correct INTEGER NOT NULL DEFAULT 0,
                PRIMARY KEY (test_id, question_id, id),
                FOREIGN KEY (test_id, question_id) REFERENCES questions(test_id, id) ON DELETE CASCADE
            );

            CREATE TABLE IF NOT EXISTS test_results (
                id TEXT PRIMARY KEY,
                test_id TEXT NOT NULL,
                student_id TEXT,
                student_name TEXT NOT NULL DEFAULT '',
                raw_answers_json TEXT,
                score INTEGER NOT NULL DEFAULT 0,
                correct_count INTEGER NOT NULL DEFAULT 0,
                error_count INTEGER NOT NULL DEFAULT 0,
                image_url TEXT,
                correction_date TEXT NOT NULL,
                score_updated_at TEXT,
                FOREIGN KEY (test_id) REFERENCES tests(id)
            );

            CREATE TABLE IF NOT EXISTS correction_logs (
                id TEXT PRIMARY KEY,
                test_result_id TEXT NOT NULL,
                question_id TEXT NOT NULL,
                original_option_id TEXT,
                new_option_id TEXT NOT NULL,
                reason TEXT NOT NULL,
                created_at TEXT NOT NULL,
                original_label TEXT,
                original_content TEXT,
                new_label TEXT,
                new_content TEXT,
                FOREIGN KEY (test_result_id) REFERENCES test_results(id)
            );

            CREATE TRIGGER IF NOT EXISTS correction_logs_no_update
            BEFORE UPDATE ON correction_logs
            BEGIN
                SELECT RAISE(ABORT, 'correction_logs is append-only');
            END;

            CREATE TRIGGER IF NOT EXISTS correction_logs_no_delete
            BEFORE DELETE ON correction_logs
            BEGIN
                SELECT RAISE(ABORT, 'correction_logs is append-only');
            END;

            CREATE INDEX IF NOT EXISTS idx_questions_test ON questions(test_id, position);
            CREATE INDEX IF NOT EXISTS idx_results_test ON test_results(test_id);
            CREATE INDEX IF NOT EXISTS idx_results_student ON test_results(student_id);
            CREATE INDEX IF NOT EXISTS idx_results_correction_date ON test_results(correction_date DESC);
            CREATE INDEX IF NOT EXISTS idx_corrections_result ON correction_logs(test_result_id, created_at);
            """
        )
