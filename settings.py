from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

from dotenv import load_dotenv


load_dotenv()

MIN_DURATION_MIN = 1
MAX_DURATION_MIN = 60
MIN_VOTE_LIMIT = 1
MAX_VOTE_LIMIT = 10
TOPIC_TITLE_MAX = 200


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _clamp(value: int, low: int, high: int) -> int:
    return max(low, min(high, value))


@dataclass
class Settings:
    host: str = "0.0.0.0"
    port: int = 3000
    default_create_min: int = 5
    default_voting_min: int = 3
    default_discuss_min: int = 5
    default_max_votes: int = 3
    data_dir: Path = field(default_factory=lambda: Path("data"))
    state_file: Path | None = None
    log_level: str = "INFO"
    cors_origins: list[str] = field(default_factory=lambda: ["*"])

    def __post_init__(self) -> None:
        self.data_dir = Path(self.data_dir)
        if self.state_file is None:
            self.state_file = self.data_dir / "state.json"
        else:
            self.state_file = Path(self.state_file)
        self.default_create_min = _clamp(self.default_create_min, MIN_DURATION_MIN, MAX_DURATION_MIN)
        self.default_voting_min = _clamp(self.default_voting_min, MIN_DURATION_MIN, MAX_DURATION_MIN)
        self.default_discuss_min = _clamp(self.default_discuss_min, MIN_DURATION_MIN, MAX_DURATION_MIN)
        self.default_max_votes = _clamp(self.default_max_votes, MIN_VOTE_LIMIT, MAX_VOTE_LIMIT)

    def default_durations(self) -> dict[str, int]:
        return {
            "create": self.default_create_min,
            "voting": self.default_voting_min,
            "discuss": self.default_discuss_min,
        }


def load_settings() -> Settings:
    data_dir = Path(os.getenv("DATA_DIR", "").strip() or "data")
    state_file = os.getenv("STATE_FILE", "").strip()
    origins = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]
    return Settings(
        host=(os.getenv("HOST", "").strip() or "0.0.0.0"),
        port=_env_int("PORT", 3000),
        default_create_min=_env_int("DEFAULT_CREATE_MIN", 5),
        default_voting_min=_env_int("DEFAULT_VOTING_MIN", 3),
        default_discuss_min=_env_int("DEFAULT_DISCUSS_MIN", 5),
        default_max_votes=_env_int("MAX_VOTES", 3),
        data_dir=data_dir,
        state_file=Path(state_file) if state_file else None,
        log_level=(os.getenv("LOG_LEVEL", "").strip().upper() or "INFO"),
        cors_origins=origins or ["*"],
    )
