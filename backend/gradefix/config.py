from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path


def _load_dotenv(path: Path) -> None:
    if not path.exists():
        return

    for raw_line in path.read_text(encoding="utf-8").splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        key = key.strip()
        value = value.strip()
        if not key:
            continue
        if len(value) >= 2 and value[0] == value[-1] and value[0] in {"'", '"'}:
            value = value[1:-1]
        os.environ.setdefault(key, value)


def _to_bool(value: str | None, default: bool = False) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class Settings:
    base_dir: Path
    data_dir: Path
    db_path: Path
    allowed_origins: list[str]
    passing_score: int
    correction_reason: str
    log_level: str
    use_redis_queue: bool
    redis_url: str

    @classmethod
    def load(cls) -> "Settings":
        base_dir = Path(__file__).resolve().parents[1]
        _load_dotenv(base_dir / ".env")
        data_dir = base_dir / "data"

        db_value = os.getenv("GRADEFIX_DB_PATH", "data/gradefix.db")
        db_path_raw = Path(db_value)
        db_path = (base_dir / db_path_raw).resolve() if not db_path_raw.is_absolute() else db_path_raw

        allowed_origins_env = os.getenv(
            "GRADEFIX_ALLOWED_ORIGINS",
            "http://localhost:3000,http://127.0.0.1:3000,http://localhost:5173",
        )
        allowed_origins = [item.strip() for item in allowed_origins_env.split(",") if item.strip()]

        return cls(
            base_dir=base_dir,
            data_dir=data_dir,
            db_path=db_path,
            allowed_origins=allowed_origins,
            passing_score=max(0, min(100, int(os.getenv("GRADEFIX_PASSING_SCORE", "70")))),
            correction_reason=os.getenv("GRADEFIX_CORRECTION_REASON", "Manual Correction by Teacher"),
            log_level=os.getenv("GRADEFIX_LOG_LEVEL", "INFO").strip().upper() or "INFO",
            use_redis_queue=_to_bool(os.getenv("USE_REDIS_QUEUE"), default=False),
            redis_url=os.getenv("REDIS_URL", "redis://localhost:6379/0"),
        )


settings = Settings.load()
