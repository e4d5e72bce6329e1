"""
Versioned SQL migrations for the memory flywheel database.

Files live next to this module in `migrations/` and are named
`NNNN_description.sql`. Each applied version is recorded in
`schema_migrations` together with a content checksum; an edited migration
that was already applied aborts startup instead of silently diverging.

Concurrent processes (API + worker) serialize on a file lock placed next
to the database file.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import os
import re
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional, Union
from urllib.parse import unquote

from filelock import FileLock, Timeout

logger = logging.getLogger(__name__)

_URL_PREFIXES = ("sqlite+aiosqlite:///", "sqlite:///")
_VERSION_PATTERN = re.compile(r"^(?P<version>\d{4,})_[\w\-]+\.sql$")
_DUPLICATE_COLUMN_PATTERN = re.compile(
    r"^ALTER\s+TABLE\s+\S+\s+ADD\s+COLUMN\s+.+$", re.IGNORECASE | re.DOTALL
)
_TRIGGER_PATTERN = re.compile(r"^CREATE\s+(TEMP\s+|TEMPORARY\s+)?TRIGGER\b")


@dataclass(frozen=True)
class Migration:
    version: str
    path: Path
    checksum: str


def sqlite_path_from_url(database_url: str) -> Optional[Path]:
    """Return the database file for a sqlite URL, or None for in-memory databases."""
    for prefix in _URL_PREFIXES:
        if database_url.startswith(prefix):
            raw = unquote(database_url[len(prefix):].split("?", 1)[0])
            if not raw or raw == ":memory:":
                return None
            return Path(raw)
    raise ValueError(
        f"Unsupported DATABASE_URL '{database_url}'; expected sqlite+aiosqlite:/// or sqlite:///"
    )


def _checksum(content: bytes) -> str:
    try:
        text = content.decode("utf-8")
    except UnicodeDecodeError:
        return hashlib.sha256(content).hexdigest()
    normalized = text.replace("\r\n", "\n").replace("\r", "\n")
    return hashlib.sha256(normalized.encode("utf-8")).hexdigest()


def _inside_trigger_body(buffer: str) -> bool:
    """True while a CREATE TRIGGER statement has not reached its closing END."""
    text = " ".join(
        line for line in buffer.splitlines() if not line.strip().startswith("--")
    ).strip().upper()
    if not _TRIGGER_PATTERN.match(text):
        return False
    return not text.endswith("END")


def split_sql_statements(script: str) -> List[str]:
    """Split a script on semicolons outside quotes and comments, dropping comment-only chunks."""
    statements: List[str] = []
    current: List[str] = []
    quote: Optional[str] = None
    index = 0
    length = len(script)
    while index < length:
        char = script[index]
        if quote is None:
            # Comments are copied through untouched; quotes inside them do not count.
            if script.startswith("--", index):
                end = script.find("\n", index)
                end = length if end == -1 else end
                current.append(script[index:end])
                index = end
                continue
            if script.startswith("/*", index):
                end = script.find("*/", index + 2)
                end = length if end == -1 else end + 2
                current.append(script[index:end])
                index = end
                continue
            if char in ("'", '"'):
                quote = char
            elif char == ";" and not _inside_trigger_body("".join(current)):
                statements.append("".join(current))
                current = []
                index += 1
                continue
        elif char == quote:
            quote = None
        current.append(char)
        index += 1
    statements.append("".join(current))

    cleaned: List[str] = []
    for statement in statements:
        code_lines = [
            line for line in statement.splitlines()
            if line.strip() and not line.strip().startswith("--")
        ]
        if code_lines:
            cleaned.append(statement.strip())
    return cleaned


class MigrationRunner:
    """Discover and apply pending SQL migrations under a cross-process lock."""

    def __init__(
        self,
        database_url: str,
        migrations_dir: Optional[Path] = None,
        lock_file_path: Optional[Union[Path, str]] = None,
        lock_timeout_seconds: float = 10.0,
    ) -> None:
        self.database_url = database_url
        self.database_file = sqlite_path_from_url(database_url)
        self.migrations_dir = Path(
            migrations_dir or Path(__file__).resolve().parent / "migrations"
        )
        configured_lock = lock_file_path or os.getenv("DB_MIGRATION_LOCK_FILE", "").strip()
        if configured_lock:
            self.lock_file_path: Optional[Path] = Path(configured_lock).expanduser()
        elif self.database_file is not None:
            self.lock_file_path = self.database_file.with_name(
                self.database_file.name + ".migrate.lock"
            )
        else:
            self.lock_file_path = None
        raw_timeout = os.getenv("DB_MIGRATION_LOCK_TIMEOUT_SEC")
        if raw_timeout:
            try:
                lock_timeout_seconds = float(raw_timeout)
            except ValueError:
                logger.warning("Ignoring invalid DB_MIGRATION_LOCK_TIMEOUT_SEC=%r", raw_timeout)
        self.lock_timeout_seconds = max(0.0, lock_timeout_seconds)

    def discover(self) -> List[Migration]:
        if not self.migrations_dir.is_dir():
            return []
        found: List[Migration] = []
        for path in sorted(self.migrations_dir.glob("*.sql")):
            match = _VERSION_PATTERN.match(path.name)
            if match is None:
                continue
            found.append(
                Migration(
                    version=match.group("version"),
                    path=path,
                    checksum=_checksum(path.read_bytes()),
                )
            )
        return found

    async def apply_pending(self) -> List[str]:
        """Apply all pending migrations and return the versions applied."""
        return await asyncio.to_thread(self._apply_pending_locked)

    def _apply_pending_locked(self) -> List[str]:
        migrations = self.discover()
        if not migrations or self.database_file is None:
            return []
        if self.lock_file_path is None:
            return self._apply(migrations)
        self.lock_file_path.parent.mkdir(parents=True, exist_ok=True)
        try:
            with FileLock(str(self.lock_file_path), timeout=self.lock_timeout_seconds):
                return self._apply(migrations)
        except Timeout as exc:
            raise RuntimeError(
                f"Timed out after {self.lock_timeout_seconds}s waiting for migration lock "
                f"{self.lock_file_path}"
            ) from exc

    def _apply(self, migrations: List[Migration]) -> List[str]:
        assert self.database_file is not None
        self.database_file.parent.mkdir(parents=True, exist_ok=True)
        applied: List[str] = []
        with sqlite3.connect(self.database_file) as conn:
            conn.execute(
                "CREATE TABLE IF NOT EXISTS schema_migrations ("
                "version TEXT PRIMARY KEY, applied_at TEXT NOT NULL, checksum TEXT NOT NULL)"
            )
            recorded = self._recorded_checksums(conn)
            for migration in migrations:
                known = recorded.get(migration.version)
                if known is not None:
                    if known != migration.checksum:
                        raise RuntimeError(
                            f"Checksum mismatch for migration {migration.version}: "
                            f"recorded={known} current={migration.checksum}"
                        )
                    continue
                for statement in split_sql_statements(
                    migration.path.read_text(encoding="utf-8")
                ):
                    self._execute(conn, statement)
                conn.execute(
                    "INSERT INTO schema_migrations(version, applied_at, checksum) VALUES (?, ?, ?)",
                    (
                        migration.version,
                        datetime.now(timezone.utc).isoformat(),
                        migration.checksum,
                    ),
                )
                conn.commit()
                applied.append(migration.version)
                logger.info("Applied migration %s (%s)", migration.version, migration.path.name)
        return applied

    @staticmethod
    def _recorded_checksums(conn: sqlite3.Connection) -> Dict[str, str]:
        rows = conn.execute("SELECT version, checksum FROM schema_migrations").fetchall()
        return {str(version): str(checksum) for version, checksum in rows}

    @staticmethod
    def _execute(conn: sqlite3.Connection, statement: str) -> None:
        try:
            conn.execute(statement)
        except sqlite3.OperationalError as exc:
            # Re-running an ADD COLUMN against a table create_all already built.
            if _DUPLICATE_COLUMN_PATTERN.match(statement) and "duplicate column name" in str(exc).lower():
                return
            raise


async def apply_pending_migrations(
    database_url: str, migrations_dir: Optional[Path] = None
) -> List[str]:
    """Convenience wrapper used by SQLiteClient.init_db."""
    runner = MigrationRunner(database_url=database_url, migrations_dir=migrations_dir)
    return await runner.apply_pending()
