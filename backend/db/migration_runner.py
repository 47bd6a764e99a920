"""
Additive SQL migrations for the memo graph database.

Migration files live in backend/db/migrations and are named
`NNNN_description.sql`. Applied versions are recorded in `schema_migrations`
together with a checksum, so editing an applied migration is detected at boot.
Only additive changes are expected: `ALTER TABLE ... ADD COLUMN` statements
that hit an existing column are skipped, which lets databases created by
`metadata.create_all` (already carrying the column) and legacy databases
(missing it) converge on the same schema.
"""

from __future__ import annotations

import asyncio
import hashlib
import os
import re
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional, Union
from urllib.parse import unquote

from filelock import FileLock, Timeout

_SQLITE_FILE_PREFIXES = ("sqlite+aiosqlite:///", "sqlite:///")
_MIGRATION_FILE_PATTERN = re.compile(r"^(?P<version>\d{4,})_.*\.sql$")
_ADD_COLUMN_PATTERN = re.compile(
    r"^ALTER\s+TABLE\s+.+\s+ADD\s+COLUMN\s+.+$",
    re.IGNORECASE | re.DOTALL,
)

DEFAULT_MIGRATIONS_DIR = Path(__file__).resolve().parent / "migrations"


@dataclass(frozen=True)
class MigrationFile:
    version: str
    path: Path
    checksum: str


def sqlite_file_from_url(database_url: str) -> Optional[Path]:
    """Local database file behind a sqlite URL, or None for in-memory databases."""
    for prefix in _SQLITE_FILE_PREFIXES:
        if not database_url.startswith(prefix):
            continue
        raw_path = database_url[len(prefix) :]
        raw_path = unquote(raw_path.split("?", 1)[0].split("#", 1)[0])
        if not raw_path or raw_path == ":memory:":
            return None
        return Path(raw_path)
    raise ValueError(
        "Unsupported DATABASE_URL for migrations. "
        "Expected sqlite+aiosqlite:///... or sqlite:///..."
    )


def checksum_of(content: bytes) -> str:
    """sha256 of the file with line endings normalized to LF."""
    try:
        normalized = content.decode("utf-8").replace("\r\n", "\n").replace("\r", "\n")
        payload = normalized.encode("utf-8")
    except UnicodeDecodeError:
        payload = content
    return hashlib.sha256(payload).hexdigest()


def split_sql_statements(script: str) -> List[str]:
    """Split a script on semicolons outside quotes and ``--`` comments."""
    statements: List[str] = []
    buffer: List[str] = []
    quote: Optional[str] = None
    in_comment = False
    index = 0

    while index < len(script):
        char = script[index]
        if in_comment:
            if char == "\n":
                in_comment = False
                buffer.append(char)
            index += 1
            continue
        if quote is None and script.startswith("--", index):
            in_comment = True
            index += 2
            continue
        if char in ("'", '"'):
            if quote is None:
                quote = char
            elif quote == char:
                quote = None
        if char == ";" and quote is None:
            statements.append("".join(buffer))
            buffer = []
        else:
            buffer.append(char)
        index += 1
    statements.append("".join(buffer))

    cleaned: List[str] = []
    for statement in statements:
        lines = [line for line in statement.splitlines() if line.strip()]
        if lines:
            cleaned.append("\n".join(lines).strip())
    return cleaned


class MigrationRunner:
    def __init__(
        self,
        database_url: str,
        migrations_dir: Optional[Path] = None,
        lock_file_path: Optional[Union[Path, str]] = None,
        lock_timeout_seconds: float = 10.0,
    ) -> None:
        self.database_url = database_url
        self.database_file = sqlite_file_from_url(database_url)
        self.migrations_dir = Path(migrations_dir or DEFAULT_MIGRATIONS_DIR)
        self.lock_file_path = self._resolve_lock_path(
            lock_file_path or os.getenv("DB_MIGRATION_LOCK_FILE", "").strip()
        )
        env_timeout = os.getenv("DB_MIGRATION_LOCK_TIMEOUT_SEC")
        if env_timeout is not None:
            try:
                lock_timeout_seconds = float(env_timeout)
            except ValueError:
                pass
        self.lock_timeout_seconds = max(0.0, lock_timeout_seconds)

    def _resolve_lock_path(self, raw_path: Optional[Union[Path, str]]) -> Optional[Path]:
        text_value = str(raw_path or "").strip()
        if text_value:
            candidate = Path(text_value).expanduser()
            if not candidate.is_absolute() and self.database_file is not None:
                candidate = self.database_file.parent / candidate
            return candidate.resolve()
        if self.database_file is None:
            return None
        return Path(f"{self.database_file}.migrate.lock")

    def discover(self) -> List[MigrationFile]:
        if not self.migrations_dir.exists():
            return []
        discovered: List[MigrationFile] = []
        for path in sorted(self.migrations_dir.glob("*.sql")):
            match = _MIGRATION_FILE_PATTERN.match(path.name)
            if not match:
                continue
            discovered.append(
                MigrationFile(
                    version=match.group("version"),
                    path=path,
                    checksum=checksum_of(path.read_bytes()),
                )
            )
        return discovered

    async def apply_pending(self) -> List[str]:
        """Apply all pending migrations and return the applied versions."""
        return await asyncio.to_thread(self._apply_pending_sync)

    def _apply_pending_sync(self) -> List[str]:
        migrations = self.discover()
        if not migrations or self.database_file is None:
            return []
        if self.lock_file_path is None:
            return self._apply(migrations)

        self.lock_file_path.parent.mkdir(parents=True, exist_ok=True)
        lock = FileLock(str(self.lock_file_path), timeout=self.lock_timeout_seconds)
        try:
            with lock:
                return self._apply(migrations)
        except Timeout as exc:
            raise RuntimeError(
                f"Timed out waiting for migration lock {self.lock_file_path} "
                f"({self.lock_timeout_seconds}s)"
            ) from exc

    def _apply(self, migrations: List[MigrationFile]) -> List[str]:
        self.database_file.parent.mkdir(parents=True, exist_ok=True)
        with sqlite3.connect(self.database_file) as conn:
            conn.execute(
                "CREATE TABLE IF NOT EXISTS schema_migrations ("
                "version TEXT PRIMARY KEY, applied_at TEXT NOT NULL, checksum TEXT NOT NULL)"
            )
            applied = self._applied_checksums(conn)
            applied_now: List[str] = []

            for migration in migrations:
                recorded = applied.get(migration.version)
                if recorded is not None:
                    if recorded != migration.checksum:
                        raise RuntimeError(
                            f"Checksum mismatch for migration {migration.version}: "
                            f"recorded={recorded} current={migration.checksum}"
                        )
                    continue

                for statement in split_sql_statements(
                    migration.path.read_text(encoding="utf-8")
                ):
                    self._execute(conn, statement)
                conn.execute(
                    "INSERT INTO schema_migrations(version, applied_at, checksum) "
                    "VALUES (?, ?, ?)",
                    (
                        migration.version,
                        datetime.now(timezone.utc).isoformat(),
                        migration.checksum,
                    ),
                )
                conn.commit()
                applied_now.append(migration.version)

            return applied_now

    @staticmethod
    def _applied_checksums(conn: sqlite3.Connection) -> Dict[str, str]:
        rows = conn.execute("SELECT version, checksum FROM schema_migrations").fetchall()
        return {str(version): str(checksum) for version, checksum in rows}

    @staticmethod
    def _execute(conn: sqlite3.Connection, statement: str) -> None:
        try:
            conn.execute(statement)
        except sqlite3.OperationalError as exc:
            if _ADD_COLUMN_PATTERN.match(statement) and "duplicate column name" in str(
                exc
            ).lower():
                return
            raise


async def apply_pending_migrations(
    database_url: str, migrations_dir: Optional[Path] = None
) -> List[str]:
    runner = MigrationRunner(database_url=database_url, migrations_dir=migrations_dir)
    return await runner.apply_pending()
