from __future__ import annotations

from pathlib import Path
from urllib.parse import unquote


def normalize_database_url_for_async(database_url: str) -> str:
    """sqlite:// -> sqlite+aiosqlite://; other URLs are returned unchanged."""
    url = (database_url or "").strip()
    if not url:
        return url

    if url.startswith("sqlite://") and "+aiosqlite" not in url:
        return url.replace("sqlite://", "sqlite+aiosqlite://", 1)

    return url


def extract_sqlite_db_file_path(database_url: str) -> Path | None:
    """Best-effort local file path of a SQLite DATABASE_URL (None for :memory: or non-sqlite)."""
    url = (database_url or "").strip().split("#", 1)[0].split("?", 1)[0]
    for prefix in ("sqlite+aiosqlite:///", "sqlite:///"):
        if url.startswith(prefix):
            raw = unquote(url[len(prefix) :])
            if not raw or raw == ":memory:":
                return None
            return Path(raw)
    return None
