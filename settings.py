from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

DEFAULT_DB_PATH = Path(__file__).resolve().parent / "data" / "stargram.db"

# Room for part headers and boundaries on top of the payload bytes.
MULTIPART_FRAMING_BYTES = 1024 * 1024


@dataclass(frozen=True)
class Settings:
    db_path: Path
    max_body_bytes: int
    max_image_bytes: int
    max_parts: int
    upload_timeout: float
    log_level: str

    @property
    def transport_limit(self) -> int:
        """Request size Robyn must let through for ``max_body_bytes`` to apply."""
        return self.max_body_bytes + MULTIPART_FRAMING_BYTES


def _getenv(name: str, default: str = "") -> str:
    return (os.environ.get(name) or default).strip()


def _getenv_int(name: str, default: int) -> int:
    raw = _getenv(name)
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from exc
    if value <= 0:
        raise ValueError(f"{name} must be positive, got {value}")
    return value


def _getenv_float(name: str, default: float) -> float:
    raw = _getenv(name)
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be a number, got {raw!r}") from exc
    if not value > 0 or value == float("inf"):
        raise ValueError(f"{name} must be a positive number of seconds, got {raw!r}")
    return value


def load_settings() -> Settings:
    """Read configuration from the environment (and a .env file if present)."""
    load_dotenv()
    db_path = _getenv("STARGRAM_DB_PATH")
    return Settings(
        db_path=Path(db_path) if db_path else DEFAULT_DB_PATH,
        max_body_bytes=_getenv_int("STARGRAM_MAX_BODY_BYTES", 32 * 1024 * 1024),
        max_image_bytes=_getenv_int("STARGRAM_MAX_IMAGE_BYTES", 10 * 1024 * 1024),
        max_parts=_getenv_int("STARGRAM_MAX_PARTS", 64),
        upload_timeout=_getenv_float("STARGRAM_UPLOAD_TIMEOUT", 30.0),
        log_level=_getenv("STARGRAM_LOG_LEVEL", "INFO").upper(),
    )
