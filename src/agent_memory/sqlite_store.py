"""
Agent memory SQLite store -- experiences, preferences and patterns in one file.

All state lives in a single SQLite database in WAL mode: the experience log,
the preference table, the pattern catalogue and an FTS5 index over the active
experiences. Writes are serialized through one lock and run inside
``BEGIN IMMEDIATE`` transactions, so the dedup / topic-upsert / confidence
rules are applied atomically even with other processes on the same file.

Usage:
    store = SQLiteStore()
    res = store.record("experience", "pytest hangs", "add timeout", "fixed", success=True)
    hits = store.search("pytest timeout", project="my-repo")
    store.close()
"""

import json
import logging
import os
import sqlite3
import threading
import time as _time
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Optional, Sequence, Tuple, Union

from agent_memory import scoring
from agent_memory.crypto import decrypt, encrypt, is_enabled as crypto_enabled, memory_home, secure_connect
from agent_memory.fingerprint import fingerprint
from agent_memory.types import (
    CompactExperience,
    Experience,
    ExperienceType,
    MemoryStats,
    Pattern,
    Preference,
    PruneResult,
    RecordOutcome,
    RecordResult,
    SearchUnavailableError,
)

logger = logging.getLogger("agent_memory.sqlite_store")

SCHEMA_VERSION = 5

GLOBAL_SCOPE = "global"
DEDUP_WINDOW = timedelta(minutes=15)
TIMELINE_WINDOW = timedelta(hours=1)
TIMELINE_LIMIT = 20
SNIPPET_LENGTH = 120
MAX_PATTERN_EXAMPLES = 10
BASE_CONFIDENCE = 0.3
CONFIDENCE_STEP = 0.1

_SEARCH_CANDIDATE_POOL = 200
_CHECKPOINT_MODES = frozenset({"PASSIVE", "FULL", "RESTART", "TRUNCATE"})
_EXPORT_FORMAT = "agent-memory-export"

_EXPERIENCE_COLUMNS = (
    "type", "context", "action", "result", "success", "tags", "project",
    "created_at", "deleted_at", "normalized_hash", "duplicate_count",
    "last_seen_at", "topic_key", "revision_count",
)
_PREFERENCE_COLUMNS = (
    "key", "value", "confidence", "source", "scope",
    "updated_at", "confirmed_count", "last_confirmed_at",
)
_PATTERN_COLUMNS = ("description", "category", "frequency", "examples", "last_seen")

# ---------------------------------------------------------------------------
# SQLite retry -- handles multi-process write contention on a shared DB file.
# WAL mode + busy_timeout handle most cases; this retries with exponential
# backoff before surfacing the error.
# ---------------------------------------------------------------------------
_DB_RETRY_ATTEMPTS = 3
_DB_RETRY_BASE_DELAY = 1.0  # seconds


def _retry_on_locked(fn, *args, **kwargs):
    """Call fn with retry on 'database is locked' OperationalError."""
    for attempt in range(_DB_RETRY_ATTEMPTS):
        try:
            return fn(*args, **kwargs)
        except sqlite3.OperationalError as e:
            if "database is locked" in str(e) and attempt < _DB_RETRY_ATTEMPTS - 1:
                delay = _DB_RETRY_BASE_DELAY * (2 ** attempt)
                logger.warning("database is locked (attempt %d/%d), retrying in %.1fs",
                               attempt + 1, _DB_RETRY_ATTEMPTS, delay)
                _time.sleep(delay)
            else:
                raise


def default_db_path() -> Path:
    """AGENT_MEMORY_DB if set, else <AGENT_MEMORY_HOME>/memory.db."""
    override = os.environ.get("AGENT_MEMORY_DB")
    if override:
        return Path(override).expanduser()
    return memory_home() / "memory.db"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _to_iso(dt: datetime) -> str:
    """Fixed-width UTC ISO string; lexicographic order == chronological order."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _parse_dt(value: Optional[str]) -> Optional[datetime]:
    """Parse an ISO datetime string to an aware UTC datetime.

    Handles naive strings (legacy ``datetime('now')`` rows), Z-suffix and
    +00:00 suffix. Returns None when *value* is falsy.
    """
    if not value:
        return None
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    dt = datetime.fromisoformat(value)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def _join_tags(tags: Union[str, Iterable[str], None]) -> str:
    """Comma-joined tag text with blanks and surrounding whitespace removed."""
    if not tags:
        return ""
    parts = tags.split(",") if isinstance(tags, str) else list(tags)
    return ",".join(p.strip() for p in parts if p and p.strip())


class SQLiteStore:
    """SQLite-backed agent memory.

    Owns one connection. Construct it explicitly and pass it to whatever needs
    it; call ``close()`` (or use it as a context manager) when done.
    """

    _MAX_CONTENT_SIZE = int(os.environ.get("AGENT_MEMORY_MAX_CONTENT_SIZE", "100000"))

    def __init__(self, db_path=None):
        self.db_path = Path(db_path) if db_path else default_db_path()
        self.db_path.parent.mkdir(parents=True, exist_ok=True, mode=0o700)

        self._lock = threading.Lock()
        self._fts_available = False
        self._closed = False
        self._conn = self._connect()
        self._init_schema()

        # Startup WAL checkpoint: clear a WAL left behind by other processes.
        try:
            result = self._conn.execute("PRAGMA wal_checkpoint(TRUNCATE)").fetchone()
            if result and result[1] > 0:
                logger.info("Startup WAL checkpoint: %d/%d pages checkpointed", result[2], result[1])
        except sqlite3.OperationalError as e:
            logger.debug("Startup WAL checkpoint failed (non-fatal): %s", e)

    def __enter__(self) -> "SQLiteStore":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def _connect(self) -> sqlite3.Connection:
        """Create a new SQLite connection with WAL settings."""
        conn = secure_connect(
            self.db_path,
            timeout=30,
            check_same_thread=False,
        )
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA synchronous=NORMAL")
        conn.execute("PRAGMA cache_size=-16000")  # 16MB cache
        conn.execute("PRAGMA busy_timeout=30000")  # 30s -- multi-process contention
        return conn

    # ------------------------------------------------------------------
    # Schema
    # ------------------------------------------------------------------

    def _init_schema(self) -> None:
        """Create the schema, or migrate an older one in place."""
        c = self._conn
        c.execute("CREATE TABLE IF NOT EXISTS schema_version (version INTEGER NOT NULL)")

        row = c.execute("SELECT version FROM schema_version LIMIT 1").fetchone()
        if row is None:
            # A database written by the first release has tables but no version row.
            legacy = c.execute(
                "SELECT 1 FROM sqlite_master WHERE type = 'table' AND name = 'experiences'"
            ).fetchone()
            version = 1 if legacy else 0
            c.execute("INSERT INTO schema_version (version) VALUES (?)", (version,))
        else:
            version = row[0]

        if version == 0:
            self._create_tables()
            c.execute("UPDATE schema_version SET version = ?", (SCHEMA_VERSION,))
        elif version < SCHEMA_VERSION:
            self._create_v1_tables()
            if version < 5:
                # The old sync triggers fire on every UPDATE; keep them out of the backfills.
                self._drop_legacy_fts_triggers()
            migrations = {
                2: self._migrate_v2,
                3: self._migrate_v3,
                4: self._migrate_v4,
                5: self._migrate_v5,
            }
            for target in range(version + 1, SCHEMA_VERSION + 1):
                migrations[target]()
                c.execute("UPDATE schema_version SET version = ?", (target,))
                c.commit()
                logger.info("Schema migrated v%d -> v%d", target - 1, target)

        self._create_indexes()
        self._create_fts_index()
        c.commit()

    def _create_tables(self) -> None:
        c = self._conn
        c.execute("""
            CREATE TABLE IF NOT EXISTS experiences (
                id               INTEGER PRIMARY KEY AUTOINCREMENT,
                type             TEXT NOT NULL,
                context          TEXT NOT NULL DEFAULT '',
                action           TEXT NOT NULL DEFAULT '',
                result           TEXT NOT NULL DEFAULT '',
                success          INTEGER NOT NULL DEFAULT 1,
                tags             TEXT NOT NULL DEFAULT '',
                project          TEXT NOT NULL DEFAULT '',
                created_at       TEXT NOT NULL,
                deleted_at       TEXT DEFAULT NULL,
                normalized_hash  TEXT,
                duplicate_count  INTEGER NOT NULL DEFAULT 1,
                last_seen_at     TEXT,
                topic_key        TEXT,
                revision_count   INTEGER NOT NULL DEFAULT 1
            )
        """)
        c.execute("""
            CREATE TABLE IF NOT EXISTS preferences (
                id                INTEGER PRIMARY KEY AUTOINCREMENT,
                key               TEXT NOT NULL,
                value             TEXT NOT NULL,
                confidence        REAL NOT NULL DEFAULT 0.3
                                  CHECK (confidence >= 0.0 AND confidence <= 1.0),
                source            TEXT DEFAULT '',
                scope             TEXT NOT NULL DEFAULT 'global',
                updated_at        TEXT,
                confirmed_count   INTEGER NOT NULL DEFAULT 1,
                last_confirmed_at TEXT,
                UNIQUE(key, scope)
            )
        """)
        c.execute("""
            CREATE TABLE IF NOT EXISTS patterns (
                id          INTEGER PRIMARY KEY AUTOINCREMENT,
                description TEXT NOT NULL UNIQUE,
                category    TEXT DEFAULT '',
                frequency   INTEGER NOT NULL DEFAULT 1,
                examples    TEXT DEFAULT '[]',
                last_seen   TEXT
            )
        """)

    def _create_v1_tables(self) -> None:
        """First-release layout; fills in any table a legacy file is missing."""
        c = self._conn
        c.execute("""
            CREATE TABLE IF NOT EXISTS experiences (
                id          INTEGER PRIMARY KEY AUTOINCREMENT,
                type        TEXT NOT NULL,
                context     TEXT,
                action      TEXT,
                result      TEXT,
                success     INTEGER DEFAULT 1,
                tags        TEXT DEFAULT '',
                project     TEXT DEFAULT '',
                created_at  TEXT DEFAULT (datetime('now'))
            )
        """)
        c.execute("""
            CREATE TABLE IF NOT EXISTS preferences (
                id          INTEGER PRIMARY KEY AUTOINCREMENT,
                key         TEXT NOT NULL,
                value       TEXT NOT NULL,
                confidence  REAL DEFAULT 0.5,
                source      TEXT DEFAULT '',
                scope       TEXT DEFAULT 'global',
                updated_at  TEXT DEFAULT (datetime('now')),
                UNIQUE(key, scope)
            )
        """)
        c.execute("""
            CREATE TABLE IF NOT EXISTS patterns (
                id          INTEGER PRIMARY KEY AUTOINCREMENT,
                description TEXT NOT NULL,
                category    TEXT DEFAULT '',
                frequency   INTEGER DEFAULT 1,
                examples    TEXT DEFAULT '[]',
                last_seen   TEXT DEFAULT (datetime('now'))
            )
        """)

    def _add_column(self, table: str, column_def: str) -> None:
        try:
            self._conn.execute(f"ALTER TABLE {table} ADD COLUMN {column_def}")
        except sqlite3.OperationalError as e:
            if "duplicate column" not in str(e):
                raise

    def _normalize_timestamps(self, table: str, column: str) -> None:
        """Rewrite legacy ``YYYY-MM-DD HH:MM:SS`` values into the fixed-width ISO form."""
        self._conn.execute(
            f"""UPDATE {table}
                SET {column} = strftime('%Y-%m-%dT%H:%M:%f', {column}) || '000+00:00'
                WHERE {column} IS NOT NULL AND {column} NOT LIKE '%+00:00'"""
        )

    def _migrate_v2(self) -> None:
        """Soft delete and deduplication columns."""
        self._add_column("experiences", "deleted_at TEXT DEFAULT NULL")
        self._add_column("experiences", "normalized_hash TEXT")
        self._add_column("experiences", "duplicate_count INTEGER DEFAULT 1")
        self._add_column("experiences", "last_seen_at TEXT")
        for table, column in (
            ("experiences", "created_at"),
            ("experiences", "deleted_at"),
            ("experiences", "last_seen_at"),
            ("preferences", "updated_at"),
            ("patterns", "last_seen"),
        ):
            self._normalize_timestamps(table, column)

        rows = self._conn.execute(
            "SELECT id, context, action, result FROM experiences WHERE normalized_hash IS NULL"
        ).fetchall()
        self._conn.executemany(
            "UPDATE experiences SET normalized_hash = ? WHERE id = ?",
            [(fingerprint(r["context"], r["action"], r["result"]), r["id"]) for r in rows],
        )
        if rows:
            logger.info("Backfilled fingerprints for %d legacy experiences", len(rows))

    def _migrate_v3(self) -> None:
        """Topic upserts."""
        self._add_column("experiences", "topic_key TEXT")
        self._add_column("experiences", "revision_count INTEGER DEFAULT 1")

    def _migrate_v4(self) -> None:
        """Preference confirmation tracking for read-time decay."""
        self._add_column("preferences", "confirmed_count INTEGER DEFAULT 1")
        self._add_column("preferences", "last_confirmed_at TEXT")
        self._normalize_timestamps("preferences", "last_confirmed_at")
        self._conn.execute(
            "UPDATE preferences SET last_confirmed_at = updated_at WHERE last_confirmed_at IS NULL"
        )

    def _migrate_v5(self) -> None:
        """Replace the first release's external-content FTS table.

        That index kept soft-deleted rows searchable; the standalone index
        created by ``_create_fts_index`` only ever holds active rows.
        """
        self._drop_legacy_fts_triggers()
        self._conn.execute("DROP TABLE IF EXISTS experiences_fts")

    def _drop_legacy_fts_triggers(self) -> None:
        for trigger in ("experiences_ai", "experiences_ad", "experiences_au"):
            self._conn.execute(f"DROP TRIGGER IF EXISTS {trigger}")

    def _create_indexes(self) -> None:
        c = self._conn
        c.execute("CREATE INDEX IF NOT EXISTS idx_experiences_deleted_at ON experiences(deleted_at)")
        c.execute("CREATE INDEX IF NOT EXISTS idx_experiences_created_at ON experiences(created_at)")
        c.execute("CREATE INDEX IF NOT EXISTS idx_experiences_type ON experiences(type, created_at)")
        c.execute("CREATE INDEX IF NOT EXISTS idx_experiences_project ON experiences(project)")
        c.execute("""
            CREATE INDEX IF NOT EXISTS idx_experiences_normalized_hash
            ON experiences(normalized_hash, project, created_at)
        """)
        c.execute("CREATE INDEX IF NOT EXISTS idx_preferences_scope ON preferences(scope, confidence)")

        # Invariants the first release only enforced in application code
        for ddl in (
            """CREATE UNIQUE INDEX IF NOT EXISTS idx_experiences_active_topic
               ON experiences(topic_key, project)
               WHERE topic_key IS NOT NULL AND deleted_at IS NULL""",
            "CREATE UNIQUE INDEX IF NOT EXISTS idx_patterns_description ON patterns(description)",
        ):
            try:
                c.execute(ddl)
            except sqlite3.IntegrityError as e:
                logger.warning("Could not enforce unique index (existing duplicates): %s", e)

    def _create_fts_index(self) -> None:
        """FTS5 index over active experiences, kept in sync by triggers."""
        c = self._conn
        try:
            c.execute("""
                CREATE VIRTUAL TABLE IF NOT EXISTS experiences_fts
                USING fts5(context, action, result, tags)
            """)
        except sqlite3.OperationalError as e:
            logger.warning("FTS5 not available, search will fall back to recent experiences: %s", e)
            self._fts_available = False
            return

        c.execute("""
            CREATE TRIGGER IF NOT EXISTS experiences_fts_ai AFTER INSERT ON experiences
            WHEN new.deleted_at IS NULL BEGIN
                INSERT INTO experiences_fts(rowid, context, action, result, tags)
                VALUES (new.id, new.context, new.action, new.result, new.tags);
            END
        """)
        # Fires for content replacement and soft delete, not for counter bumps.
        c.execute("""
            CREATE TRIGGER IF NOT EXISTS experiences_fts_au
            AFTER UPDATE OF context, action, result, tags, deleted_at ON experiences BEGIN
                DELETE FROM experiences_fts WHERE rowid = old.id;
                INSERT INTO experiences_fts(rowid, context, action, result, tags)
                SELECT new.id, new.context, new.action, new.result, new.tags
                WHERE new.deleted_at IS NULL;
            END
        """)
        c.execute("""
            CREATE TRIGGER IF NOT EXISTS experiences_fts_ad AFTER DELETE ON experiences BEGIN
                DELETE FROM experiences_fts WHERE rowid = old.id;
            END
        """)
        self._fts_available = True

        # Populate from existing data if the index is empty
        fts_count = c.execute("SELECT COUNT(*) FROM experiences_fts").fetchone()[0]
        active = c.execute("SELECT COUNT(*) FROM experiences WHERE deleted_at IS NULL").fetchone()[0]
        if fts_count == 0 and active > 0:
            c.execute("""
                INSERT INTO experiences_fts(rowid, context, action, result, tags)
                SELECT id, context, action, result, tags FROM experiences WHERE deleted_at IS NULL
            """)
            logger.info("Populated FTS5 index with %d existing experiences", active)

    # ------------------------------------------------------------------
    # Write transactions
    # ------------------------------------------------------------------

    @contextmanager
    def _write(self) -> Iterator[sqlite3.Connection]:
        """Serialize a write: process lock + ``BEGIN IMMEDIATE``, rollback on error."""
        with self._lock:
            _retry_on_locked(self._conn.execute, "BEGIN IMMEDIATE")
            try:
                yield self._conn
            except BaseException:
                self._conn.rollback()
                raise
            _retry_on_locked(self._conn.commit)

    def checkpoint(self, mode: str = "PASSIVE") -> Tuple[int, int, int]:
        """Run a WAL checkpoint. Returns (busy, wal_pages, checkpointed_pages).

        Call opportunistically after a batch of writes rather than after
        every statement.
        """
        mode = mode.upper()
        if mode not in _CHECKPOINT_MODES:
            raise ValueError(f"Unknown checkpoint mode {mode!r}")
        with self._lock:
            row = _retry_on_locked(self._conn.execute, f"PRAGMA wal_checkpoint({mode})").fetchone()
        busy, log_pages, checkpointed = (row[0], row[1], row[2]) if row else (0, 0, 0)
        if checkpointed > 0:
            logger.debug("WAL checkpoint (%s): %d/%d pages (%d busy)", mode, checkpointed, log_pages, busy)
        return busy, log_pages, checkpointed

    def _check_text(self, name: str, value: Optional[str]) -> str:
        if value is None:
            return ""
        if not isinstance(value, str):
            raise ValueError(f"{name} must be a string")
        if len(value) > self._MAX_CONTENT_SIZE:
            raise ValueError(
                f"{name} size ({len(value):,} chars) exceeds limit ({self._MAX_CONTENT_SIZE:,}). "
                "Override with AGENT_MEMORY_MAX_CONTENT_SIZE env var."
            )
        return value

    # ------------------------------------------------------------------
    # Experiences
    # ------------------------------------------------------------------

    def record(
        self,
        type: Union[str, ExperienceType],
        context: str,
        action: str,
        result: str,
        success: bool = True,
        tags: Union[str, Sequence[str], None] = "",
        project: Optional[str] = "",
        topic_key: Optional[str] = None,
    ) -> RecordResult:
        """Record an experience.

        Resolution order: topic upsert (same topic_key + project, active),
        then fingerprint dedup (same project, created within DEDUP_WINDOW),
        then a plain insert.
        """
        exp_type = ExperienceType.parse(type)
        context = self._check_text("context", context)
        action = self._check_text("action", action)
        result = self._check_text("result", result)
        tags = _join_tags(tags)
        project = (project or "").strip()
        topic_key = (topic_key or "").strip() or None
        normalized_hash = fingerprint(context, action, result)
        now = _utcnow()
        now_iso = _to_iso(now)

        with self._write() as c:
            if topic_key:
                row = c.execute(
                    """SELECT id FROM experiences
                       WHERE topic_key = ? AND project = ? AND deleted_at IS NULL
                       LIMIT 1""",
                    (topic_key, project),
                ).fetchone()
                if row:
                    c.execute(
                        """UPDATE experiences
                           SET context = ?, action = ?, result = ?, success = ?, tags = ?,
                               normalized_hash = ?, revision_count = revision_count + 1,
                               last_seen_at = ?
                           WHERE id = ?""",
                        (context, action, result, int(bool(success)), tags,
                         normalized_hash, now_iso, row["id"]),
                    )
                    logger.debug("Topic %r upserted into experience %d", topic_key, row["id"])
                    return RecordResult(row["id"], RecordOutcome.UPSERTED)

            # A topic-keyed call may only adopt a duplicate that has no topic yet;
            # the adopted row then carries the topic for later upserts.
            row = c.execute(
                """SELECT id FROM experiences
                   WHERE normalized_hash = ? AND project = ? AND deleted_at IS NULL
                     AND created_at >= ? AND (? IS NULL OR topic_key IS NULL)
                   ORDER BY created_at DESC LIMIT 1""",
                (normalized_hash, project, _to_iso(now - DEDUP_WINDOW), topic_key),
            ).fetchone()
            if row:
                c.execute(
                    """UPDATE experiences
                       SET duplicate_count = duplicate_count + 1, last_seen_at = ?,
                           topic_key = COALESCE(topic_key, ?)
                       WHERE id = ?""",
                    (now_iso, topic_key, row["id"]),
                )
                logger.debug("Experience %d recurred (dedup)", row["id"])
                return RecordResult(row["id"], RecordOutcome.DEDUPLICATED)

            cur = c.execute(
                """INSERT INTO experiences
                   (type, context, action, result, success, tags, project, created_at,
                    normalized_hash, duplicate_count, last_seen_at, topic_key, revision_count)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, 1, ?, ?, 1)""",
                (exp_type.value, context, action, result, int(bool(success)), tags, project,
                 now_iso, normalized_hash, now_iso, topic_key),
            )
            return RecordResult(cur.lastrowid, RecordOutcome.CREATED)

    def get_by_id(self, experience_id: int) -> Optional[Experience]:
        """Full record for an active experience, or None."""
        row = self._conn.execute(
            "SELECT * FROM experiences WHERE id = ? AND deleted_at IS NULL",
            (experience_id,),
        ).fetchone()
        return self._row_to_experience(row) if row else None

    def get_by_topic(self, topic_key: str, project: Optional[str] = "") -> Optional[Experience]:
        row = self._conn.execute(
            """SELECT * FROM experiences
               WHERE topic_key = ? AND project = ? AND deleted_at IS NULL LIMIT 1""",
            (topic_key, (project or "").strip()),
        ).fetchone()
        return self._row_to_experience(row) if row else None

    def get_recent(
        self,
        limit: int = 10,
        project: Optional[str] = None,
        exclude_types: Sequence[str] = (),
    ) -> List[Experience]:
        """Most recent active experiences.

        With *project*, only that project's rows and global rows are returned.
        """
        conditions = ["deleted_at IS NULL"]
        params: List[Any] = []
        project = (project or "").strip()
        if project:
            conditions.append("(project = ? OR project = '')")
            params.append(project)
        if exclude_types:
            conditions.append(f"type NOT IN ({', '.join('?' for _ in exclude_types)})")
            params.extend(str(t) for t in exclude_types)
        params.append(limit)
        rows = self._conn.execute(
            f"""SELECT * FROM experiences WHERE {" AND ".join(conditions)}
                ORDER BY created_at DESC, id DESC LIMIT ?""",
            params,
        ).fetchall()
        return [self._row_to_experience(row) for row in rows]

    def get_by_type(self, exp_type: Union[str, ExperienceType], limit: int = 10) -> List[Experience]:
        """Active experiences of one type, newest first."""
        rows = self._conn.execute(
            """SELECT * FROM experiences WHERE type = ? AND deleted_at IS NULL
               ORDER BY created_at DESC, id DESC LIMIT ?""",
            (ExperienceType.parse(exp_type).value, limit),
        ).fetchall()
        return [self._row_to_experience(row) for row in rows]

    def count_by_type(
        self,
        exp_type: Union[str, ExperienceType],
        project: Optional[str] = None,
        since: Optional[datetime] = None,
    ) -> int:
        conditions = ["type = ?", "deleted_at IS NULL"]
        params: List[Any] = [ExperienceType.parse(exp_type).value]
        if project is not None:
            conditions.append("project = ?")
            params.append(project)
        if since is not None:
            conditions.append("created_at >= ?")
            params.append(_to_iso(since))
        return self._conn.execute(
            f"SELECT COUNT(*) FROM experiences WHERE {' AND '.join(conditions)}", params
        ).fetchone()[0]

    def get_timeline(self, experience_id: int) -> List[CompactExperience]:
        """Active experiences within +-1 hour of the target, oldest first (max 20).

        Empty when the target is missing or soft-deleted.
        """
        row = self._conn.execute(
            "SELECT created_at FROM experiences WHERE id = ? AND deleted_at IS NULL",
            (experience_id,),
        ).fetchone()
        if not row:
            return []
        center = _parse_dt(row["created_at"])
        rows = self._conn.execute(
            """SELECT * FROM experiences
               WHERE deleted_at IS NULL AND created_at BETWEEN ? AND ?
               ORDER BY created_at ASC, id ASC LIMIT ?""",
            (_to_iso(center - TIMELINE_WINDOW), _to_iso(center + TIMELINE_WINDOW), TIMELINE_LIMIT),
        ).fetchall()
        return [self._row_to_compact(r) for r in rows]

    def soft_delete(
        self,
        id: Optional[int] = None,
        tag: Optional[str] = None,
        project: Optional[str] = None,
        exact_tag: bool = False,
    ) -> int:
        """Soft-delete active experiences by id, tag and/or project.

        Each selector runs as its own update and the affected-row counts are
        summed. Tag matching is a case-insensitive substring test on the
        stored comma-joined tags ("py" also matches "python"); pass
        ``exact_tag=True`` to require an exact label match instead.
        """
        tag = (tag or "").strip().lower() or None
        project = (project or "").strip() or None
        if id is None and tag is None and project is None:
            raise ValueError("at least one of id, tag or project is required")
        now_iso = _to_iso(_utcnow())
        total = 0
        with self._write() as c:
            if id is not None:
                total += c.execute(
                    "UPDATE experiences SET deleted_at = ? WHERE id = ? AND deleted_at IS NULL",
                    (now_iso, id),
                ).rowcount
            if tag:
                rows = c.execute(
                    """SELECT id, tags FROM experiences
                       WHERE deleted_at IS NULL AND instr(LOWER(tags), ?) > 0""",
                    (tag,),
                ).fetchall()
                if exact_tag:
                    rows = [
                        r for r in rows
                        if tag in {t.strip().lower() for t in (r["tags"] or "").split(",")}
                    ]
                if rows:
                    total += c.executemany(
                        "UPDATE experiences SET deleted_at = ? WHERE id = ? AND deleted_at IS NULL",
                        [(now_iso, r["id"]) for r in rows],
                    ).rowcount
            if project:
                total += c.execute(
                    "UPDATE experiences SET deleted_at = ? WHERE project = ? AND deleted_at IS NULL",
                    (now_iso, project),
                ).rowcount
        if total:
            logger.info("Soft-deleted %d experience(s)", total)
        return total

    def prune_older_than(self, days: float, only_failures: bool = False) -> int:
        """Soft-delete active experiences created more than *days* days ago."""
        with self._write() as c:
            return self._prune_older_than(c, days, only_failures)

    def _prune_older_than(self, c: sqlite3.Connection, days: float, only_failures: bool) -> int:
        if days < 0:
            raise ValueError("older_than_days must be >= 0")
        now = _utcnow()
        return c.execute(
            """UPDATE experiences SET deleted_at = ?
               WHERE deleted_at IS NULL AND created_at < ?
                 AND (? = 0 OR success = 0)""",
            (_to_iso(now), _to_iso(now - timedelta(days=days)), int(bool(only_failures))),
        ).rowcount

    # ------------------------------------------------------------------
    # Full-text search + ranking
    # ------------------------------------------------------------------

    def search(
        self,
        query: str,
        project: Optional[str] = None,
        limit: int = 5,
        compact: bool = True,
    ) -> List[Union[CompactExperience, Experience]]:
        """Ranked full-text search over active experiences.

        *query* is FTS5 query syntax. With *project*, only that project's
        rows and global rows are candidates and the project's rows get a
        scope bonus. Raises SearchUnavailableError when the index cannot
        answer (malformed query, FTS5 missing).
        """
        query = (query or "").strip()
        if not query:
            raise ValueError("query must be a non-empty string")
        if limit < 1:
            raise ValueError("limit must be >= 1")
        if not self._fts_available:
            raise SearchUnavailableError("full-text index is not available")
        project = (project or "").strip() or None

        sql = """SELECT e.*, bm25(experiences_fts) AS bm25_rank
                 FROM experiences_fts
                 JOIN experiences e ON e.id = experiences_fts.rowid
                 WHERE experiences_fts MATCH ? AND e.deleted_at IS NULL"""
        params: List[Any] = [query]
        if project:
            sql += " AND (e.project = ? OR e.project = '')"
            params.append(project)
        sql += " ORDER BY bm25_rank LIMIT ?"
        params.append(max(limit * 10, _SEARCH_CANDIDATE_POOL))

        try:
            rows = _retry_on_locked(self._conn.execute, sql, params).fetchall()
        except sqlite3.OperationalError as e:
            if "database is locked" in str(e):
                raise
            raise SearchUnavailableError(f"full-text query failed: {e}") from e
        if not rows:
            return []

        now = _utcnow()
        relevances = scoring.normalize_bm25([row["bm25_rank"] for row in rows])
        ranked = []
        for row, relevance in zip(rows, relevances):
            created = _parse_dt(row["created_at"])
            score = scoring.rank_score(
                relevance,
                scoring.recency_score(created, now),
                scoring.outcome_score(bool(row["success"])),
                scoring.scope_bonus(row["project"] or "", project),
            )
            ranked.append((score, created, row["id"], row))
        ranked.sort(key=lambda item: (item[0], item[1], item[2]), reverse=True)

        results: List[Union[CompactExperience, Experience]] = []
        for score, _created, _id, row in ranked[:limit]:
            item = self._row_to_compact(row) if compact else self._row_to_experience(row)
            item.score = score
            results.append(item)
        return results

    def rebuild_index(self) -> int:
        """Re-create the FTS5 index from the active experiences."""
        if not self._fts_available:
            raise SearchUnavailableError("full-text index is not available")
        with self._write() as c:
            c.execute("DELETE FROM experiences_fts")
            count = c.execute("""
                INSERT INTO experiences_fts(rowid, context, action, result, tags)
                SELECT id, context, action, result, tags FROM experiences WHERE deleted_at IS NULL
            """).rowcount
        logger.info("FTS5 index rebuilt with %d entries", count)
        return count

    def validate(self) -> Dict[str, Any]:
        """SQLite integrity check plus FTS/active-row agreement."""
        integrity = self._conn.execute("PRAGMA integrity_check").fetchone()[0]
        active = self._conn.execute(
            "SELECT COUNT(*) FROM experiences WHERE deleted_at IS NULL"
        ).fetchone()[0]
        indexed = None
        if self._fts_available:
            indexed = self._conn.execute("SELECT COUNT(*) FROM experiences_fts").fetchone()[0]
        return {
            "integrity": integrity,
            "active_experiences": active,
            "indexed": indexed,
            "fts_available": self._fts_available,
            "ok": integrity == "ok" and indexed == active,
        }

    # ------------------------------------------------------------------
    # Preferences
    # ------------------------------------------------------------------

    def affirm(
        self,
        key: str,
        value: str,
        scope: Optional[str] = GLOBAL_SCOPE,
        source: Optional[str] = "observed",
    ) -> Preference:
        """Create or re-affirm a preference.

        First affirmation stores BASE_CONFIDENCE. Each later one raises the
        confidence to ``0.3 + confirmed_count * 0.1`` (pre-increment count,
        capped at 1.0, never lower than what is stored).
        """
        key = (key or "").strip()
        value = (value or "").strip()
        if not key or not value:
            raise ValueError("key and value are required")
        self._check_text("value", value)
        scope = (scope or "").strip() or GLOBAL_SCOPE
        source = source or "observed"
        now_iso = _to_iso(_utcnow())

        with self._write() as c:
            row = c.execute(
                "SELECT confidence, confirmed_count FROM preferences WHERE key = ? AND scope = ?",
                (key, scope),
            ).fetchone()
            if row is None:
                c.execute(
                    """INSERT INTO preferences
                       (key, value, confidence, source, scope, updated_at,
                        confirmed_count, last_confirmed_at)
                       VALUES (?, ?, ?, ?, ?, ?, 1, ?)""",
                    (key, value, BASE_CONFIDENCE, source, scope, now_iso, now_iso),
                )
            else:
                count = row["confirmed_count"] or 1
                stepped = min(1.0, BASE_CONFIDENCE + count * CONFIDENCE_STEP)
                confidence = round(max(row["confidence"] or 0.0, stepped), 2)
                c.execute(
                    """UPDATE preferences
                       SET value = ?, source = ?, confidence = ?,
                           confirmed_count = ?, updated_at = ?, last_confirmed_at = ?
                       WHERE key = ? AND scope = ?""",
                    (value, source, confidence, count + 1, now_iso, now_iso, key, scope),
                )
            stored = c.execute(
                "SELECT * FROM preferences WHERE key = ? AND scope = ?", (key, scope)
            ).fetchone()
        return self._row_to_preference(stored)

    def get_preference(self, key: str, scope: str = GLOBAL_SCOPE) -> Optional[Preference]:
        row = self._conn.execute(
            "SELECT * FROM preferences WHERE key = ? AND scope = ?", (key, scope)
        ).fetchone()
        return self._row_to_preference(row) if row else None

    def get_global_preferences(self) -> List[Preference]:
        return self.get_preferences_for_scope(GLOBAL_SCOPE)

    def get_preferences_for_scope(self, scope: str) -> List[Preference]:
        """Preferences of one scope, raw confidence descending."""
        rows = self._conn.execute(
            "SELECT * FROM preferences WHERE scope = ? ORDER BY confidence DESC, key ASC",
            (scope,),
        ).fetchall()
        return [self._row_to_preference(row) for row in rows]

    def get_merged_preferences(self, project: str, now: Optional[datetime] = None) -> List[Preference]:
        """Global + project preferences; the project's row wins a shared key.

        Each result's ``origin`` is "global" or "project". Ordered by
        effective (decayed) confidence, highest first.
        """
        now = now or _utcnow()
        rows = self._conn.execute(
            "SELECT * FROM preferences WHERE scope = ? OR scope = ? ORDER BY scope = ? ",
            (GLOBAL_SCOPE, project, project),
        ).fetchall()
        merged: Dict[str, Preference] = {}
        # Global rows sort first, so project rows overwrite them.
        for row in rows:
            pref = self._row_to_preference(row)
            pref.origin = "project" if pref.scope == project and project != GLOBAL_SCOPE else "global"
            merged[pref.key] = pref
        return sorted(
            merged.values(),
            key=lambda p: (-p.effective_confidence(now), -p.confidence, p.key),
        )

    def prune_preferences_below(self, min_confidence: float) -> int:
        """Hard-delete preferences whose stored confidence is below the threshold."""
        with self._write() as c:
            return self._prune_preferences_below(c, min_confidence)

    def _prune_preferences_below(self, c: sqlite3.Connection, min_confidence: float) -> int:
        if not 0.0 <= min_confidence <= 1.0:
            raise ValueError("min_confidence must be between 0 and 1")
        return c.execute(
            "DELETE FROM preferences WHERE confidence < ?", (min_confidence,)
        ).rowcount

    # ------------------------------------------------------------------
    # Patterns
    # ------------------------------------------------------------------

    def record_pattern(self, description: str, category: str = "", example: str = "") -> Pattern:
        """Count one more observation of *description*, keeping the last 10 examples."""
        description = (description or "").strip()
        if not description:
            raise ValueError("description is required")
        self._check_text("description", description)
        self._check_text("example", example)
        now_iso = _to_iso(_utcnow())

        with self._write() as c:
            row = c.execute(
                "SELECT id, examples FROM patterns WHERE description = ?", (description,)
            ).fetchone()
            if row is None:
                c.execute(
                    """INSERT INTO patterns (description, category, frequency, examples, last_seen)
                       VALUES (?, ?, 1, ?, ?)""",
                    (description, category or "", json.dumps([example]), now_iso),
                )
            else:
                examples = json.loads(row["examples"] or "[]")
                examples.append(example)
                while len(examples) > MAX_PATTERN_EXAMPLES:
                    examples.pop(0)
                c.execute(
                    """UPDATE patterns
                       SET frequency = frequency + 1, examples = ?, last_seen = ?
                       WHERE id = ?""",
                    (json.dumps(examples), now_iso, row["id"]),
                )
            stored = c.execute("SELECT * FROM patterns WHERE description = ?", (description,)).fetchone()
        return self._row_to_pattern(stored)

    def get_pattern(self, description: str) -> Optional[Pattern]:
        row = self._conn.execute(
            "SELECT * FROM patterns WHERE description = ?", (description,)
        ).fetchone()
        return self._row_to_pattern(row) if row else None

    def get_patterns(self, limit: int = 10) -> List[Pattern]:
        """Most frequent patterns first."""
        rows = self._conn.execute(
            "SELECT * FROM patterns ORDER BY frequency DESC, last_seen DESC LIMIT ?",
            (limit,),
        ).fetchall()
        return [self._row_to_pattern(row) for row in rows]

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def prune(
        self,
        older_than_days: Optional[float] = None,
        only_failures: bool = False,
        min_confidence: Optional[float] = None,
    ) -> PruneResult:
        """Age-based experience pruning and/or confidence-based preference pruning.

        At least one threshold is required. Both run in one transaction.
        """
        if older_than_days is None and min_confidence is None:
            raise ValueError("at least one of older_than_days or min_confidence is required")
        result = PruneResult()
        with self._write() as c:
            if older_than_days is not None:
                result.experiences = self._prune_older_than(c, older_than_days, only_failures)
            if min_confidence is not None:
                result.preferences = self._prune_preferences_below(c, min_confidence)
        if result.experiences or result.preferences:
            logger.info("Pruned %d experience(s), %d preference(s)", result.experiences, result.preferences)
        return result

    def stats(self) -> MemoryStats:
        row = self._conn.execute("""
            SELECT
                (SELECT COUNT(*) FROM experiences WHERE deleted_at IS NULL) AS experiences,
                (SELECT COUNT(*) FROM experiences
                  WHERE type = 'correction' AND deleted_at IS NULL) AS corrections,
                (SELECT COUNT(*) FROM experiences WHERE deleted_at IS NOT NULL) AS soft_deleted,
                (SELECT COUNT(*) FROM preferences WHERE scope = 'global') AS global_preferences,
                (SELECT COUNT(*) FROM preferences WHERE scope != 'global') AS project_preferences,
                (SELECT COUNT(*) FROM patterns) AS patterns
        """).fetchone()
        return MemoryStats(**{k: row[k] for k in row.keys()})

    # ------------------------------------------------------------------
    # Export / import
    # ------------------------------------------------------------------

    def export_to_file(self, filepath: Path) -> Dict[str, Any]:
        """Write every row (soft-deleted experiences included) to a JSON file.

        The body is Fernet-encrypted when encryption at rest is enabled.
        """
        filepath = Path(filepath)
        payload = {
            "format": _EXPORT_FORMAT,
            "schema_version": SCHEMA_VERSION,
            "exported_at": _to_iso(_utcnow()),
            "experiences": [dict(r) for r in self._conn.execute("SELECT * FROM experiences ORDER BY id")],
            "preferences": [dict(r) for r in self._conn.execute("SELECT * FROM preferences ORDER BY id")],
            "patterns": [dict(r) for r in self._conn.execute("SELECT * FROM patterns ORDER BY id")],
        }
        filepath.parent.mkdir(parents=True, exist_ok=True, mode=0o700)
        fd = os.open(str(filepath), os.O_CREAT | os.O_WRONLY | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            fh.write(encrypt(json.dumps(payload, indent=2)))
        counts = {k: len(payload[k]) for k in ("experiences", "preferences", "patterns")}
        logger.info("Exported %s to %s", counts, filepath)
        return {**counts, "encrypted": crypto_enabled(), "path": str(filepath)}

    def import_from_file(self, filepath: Path, clear_existing: bool = True) -> Dict[str, int]:
        """Load an export written by ``export_to_file``.

        With *clear_existing* the store is replaced and ids are preserved.
        Otherwise rows are appended; experiences already present (same
        fingerprint, project and creation time) are skipped, and existing
        preferences, patterns and active topics win over incoming ones.
        """
        data = json.loads(decrypt(Path(filepath).read_text(encoding="utf-8")))
        if not isinstance(data, dict) or data.get("format") != _EXPORT_FORMAT:
            raise ValueError(f"{filepath} is not an agent-memory export")

        counts = {"experiences": 0, "preferences": 0, "patterns": 0}
        with self._write() as c:
            if clear_existing:
                c.execute("DELETE FROM experiences")
                c.execute("DELETE FROM preferences")
                c.execute("DELETE FROM patterns")

            for exp in data.get("experiences", []):
                exp = dict(exp)
                if not exp.get("normalized_hash"):
                    exp["normalized_hash"] = fingerprint(exp.get("context"), exp.get("action"), exp.get("result"))
                if not clear_existing:
                    if c.execute(
                        """SELECT 1 FROM experiences
                           WHERE normalized_hash = ? AND project = ? AND created_at = ?""",
                        (exp["normalized_hash"], exp.get("project") or "", exp.get("created_at")),
                    ).fetchone():
                        continue
                    if exp.get("topic_key") and not exp.get("deleted_at") and c.execute(
                        """SELECT 1 FROM experiences
                           WHERE topic_key = ? AND project = ? AND deleted_at IS NULL""",
                        (exp["topic_key"], exp.get("project") or ""),
                    ).fetchone():
                        continue
                columns = (("id",) if clear_existing else ()) + _EXPERIENCE_COLUMNS
                values = [exp.get(col) for col in columns]
                c.execute(
                    f"INSERT INTO experiences ({', '.join(columns)}) VALUES ({', '.join('?' for _ in columns)})",
                    self._fill_experience_defaults(dict(zip(columns, values)), columns),
                )
                counts["experiences"] += 1

            for pref in data.get("preferences", []):
                counts["preferences"] += c.execute(
                    f"""INSERT INTO preferences ({', '.join(_PREFERENCE_COLUMNS)})
                        VALUES ({', '.join('?' for _ in _PREFERENCE_COLUMNS)})
                        ON CONFLICT(key, scope) DO NOTHING""",
                    [pref.get(col) for col in _PREFERENCE_COLUMNS],
                ).rowcount

            for pat in data.get("patterns", []):
                counts["patterns"] += c.execute(
                    f"""INSERT INTO patterns ({', '.join(_PATTERN_COLUMNS)})
                        VALUES ({', '.join('?' for _ in _PATTERN_COLUMNS)})
                        ON CONFLICT(description) DO NOTHING""",
                    [pat.get(col) for col in _PATTERN_COLUMNS],
                ).rowcount

        logger.info("Imported %s from %s", counts, filepath)
        return counts

    @staticmethod
    def _fill_experience_defaults(row: Dict[str, Any], columns: Sequence[str]) -> List[Any]:
        defaults = {
            "context": "", "action": "", "result": "", "success": 1, "tags": "",
            "project": "", "duplicate_count": 1, "revision_count": 1,
        }
        if not row.get("created_at"):
            row["created_at"] = _to_iso(_utcnow())
        return [row[col] if row.get(col) is not None else defaults.get(col) for col in columns]

    # ------------------------------------------------------------------
    # Row mapping
    # ------------------------------------------------------------------

    @staticmethod
    def _row_to_experience(row: sqlite3.Row) -> Experience:
        return Experience(
            id=row["id"],
            type=row["type"],
            context=row["context"] or "",
            action=row["action"] or "",
            result=row["result"] or "",
            success=bool(row["success"]),
            tags=row["tags"] or "",
            project=row["project"] or "",
            created_at=_parse_dt(row["created_at"]),
            deleted_at=_parse_dt(row["deleted_at"]),
            normalized_hash=row["normalized_hash"],
            duplicate_count=row["duplicate_count"] or 1,
            last_seen_at=_parse_dt(row["last_seen_at"]),
            topic_key=row["topic_key"],
            revision_count=row["revision_count"] or 1,
        )

    @staticmethod
    def _row_to_compact(row: sqlite3.Row) -> CompactExperience:
        return CompactExperience(
            id=row["id"],
            type=row["type"],
            tags=row["tags"] or "",
            created_at=_parse_dt(row["created_at"]),
            success=bool(row["success"]),
            project=row["project"] or "",
            snippet=(row["context"] or "")[:SNIPPET_LENGTH],
            topic_key=row["topic_key"],
            duplicate_count=row["duplicate_count"] or 1,
            revision_count=row["revision_count"] or 1,
        )

    @staticmethod
    def _row_to_preference(row: sqlite3.Row) -> Preference:
        return Preference(
            id=row["id"],
            key=row["key"],
            value=row["value"],
            confidence=row["confidence"],
            source=row["source"] or "",
            scope=row["scope"] or GLOBAL_SCOPE,
            confirmed_count=row["confirmed_count"] or 1,
            last_confirmed_at=_parse_dt(row["last_confirmed_at"]),
            updated_at=_parse_dt(row["updated_at"]),
        )

    @staticmethod
    def _row_to_pattern(row: sqlite3.Row) -> Pattern:
        return Pattern(
            id=row["id"],
            description=row["description"],
            category=row["category"] or "",
            frequency=row["frequency"],
            examples=json.loads(row["examples"] or "[]"),
            last_seen=_parse_dt(row["last_seen"]),
        )

    def close(self) -> None:
        """Checkpoint the WAL and close the connection. Safe to call twice."""
        if self._closed:
            return
        self._closed = True
        try:
            self._conn.execute("PRAGMA wal_checkpoint(PASSIVE)")
        except sqlite3.Error as e:
            logger.debug("WAL checkpoint on close failed: %s", e)
        self._conn.close()
