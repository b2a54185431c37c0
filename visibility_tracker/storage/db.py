"""
SQLite persistence for the visibility tracker.

Schema versioning with forward-only, transactional migrations recorded in a
schema_version table. All timestamps are stored as ISO 8601 strings with a
'Z' suffix, so string comparison orders them chronologically.

Tables:
- domains, prompt_sets, tracking_configs: what to track and how often
- tracking_runs, tracking_results: one run per execution, one result per
  (prompt, provider) attempt
- subscriptions: billing periods written by the billing side
- cited_domains: hostnames cited by providers (enrichment side task)

Every function takes an open connection; callers own commit/close. See
storage.store.TrackingStore for the async, connection-per-call wrapper.

Security:
    - ALL queries use parameterized statements to prevent SQL injection
    - NO API keys are ever stored in the database
"""

import json
import logging
import sqlite3
from collections.abc import Iterable
from contextlib import closing, contextmanager
from datetime import datetime
from pathlib import Path

from visibility_tracker.config.constants import COUNTRIES, INTERVALS
from visibility_tracker.exceptions import DatabaseQueryError
from visibility_tracker.utils.time import format_timestamp, parse_timestamp, utc_timestamp

from .records import (
    CitedDomain,
    Domain,
    PromptSet,
    RunStatus,
    Subscription,
    TrackingConfig,
    TrackingResult,
    TrackingRun,
)

logger = logging.getLogger(__name__)

# Current schema version - increment when migrations are added
CURRENT_SCHEMA_VERSION = 1

PROVIDER_NAMES = ("chatgpt", "claude", "gemini", "perplexity")


@contextmanager
def connect(db_path: str):
    """
    Open a connection with foreign keys on, commit on success, always close.

    Example:
        >>> with connect("./data/tracker.db") as conn:
        ...     insert_domain(conn, "owner-1", "Interhyp", "interhyp.de")
    """
    with closing(sqlite3.connect(db_path)) as conn:
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        with conn:
            yield conn


def init_db_if_needed(db_path: str) -> None:
    """
    Initialize SQLite database with schema versioning.

    Idempotent: creates the file and parent directory if needed and applies
    any pending migrations.

    Raises:
        sqlite3.Error: If database creation or migration fails
        ValueError: If the database schema is newer than this software
    """
    Path(db_path).parent.mkdir(parents=True, exist_ok=True)

    with closing(sqlite3.connect(db_path)) as conn:
        conn.execute("PRAGMA foreign_keys = ON")
        conn.execute("""
            CREATE TABLE IF NOT EXISTS schema_version (
                version INTEGER PRIMARY KEY,
                applied_at TEXT NOT NULL
            )
        """)
        conn.commit()

        current_version = get_schema_version(conn)

        if current_version < CURRENT_SCHEMA_VERSION:
            logger.info(
                f"Database schema upgrade needed: "
                f"v{current_version} -> v{CURRENT_SCHEMA_VERSION}"
            )
            apply_migrations(conn, current_version, CURRENT_SCHEMA_VERSION)
            logger.info(f"Database schema upgraded to v{CURRENT_SCHEMA_VERSION}")
        elif current_version == CURRENT_SCHEMA_VERSION:
            logger.debug(f"Database schema is current (v{CURRENT_SCHEMA_VERSION})")
        else:
            raise ValueError(
                f"Database schema version {current_version} is newer than "
                f"expected {CURRENT_SCHEMA_VERSION}. Update your software or "
                f"use a different database file."
            )


def get_schema_version(conn: sqlite3.Connection) -> int:
    """Return the applied schema version, 0 for a fresh database."""
    result = conn.execute("SELECT MAX(version) FROM schema_version").fetchone()[0]
    return result if result is not None else 0


def apply_migrations(
    conn: sqlite3.Connection, from_version: int, to_version: int
) -> None:
    """
    Apply schema migrations from one version to another.

    Each migration runs in its own transaction; a failing migration leaves
    the database at the previous version.

    Raises:
        sqlite3.Error: If any migration SQL fails (transaction rolled back)
        ValueError: If from_version > to_version (downgrades not supported)
    """
    if from_version > to_version:
        raise ValueError(
            f"Cannot downgrade schema from v{from_version} to v{to_version}. "
            f"Downgrades are not supported. Use a database backup instead."
        )

    for target_version in range(from_version + 1, to_version + 1):
        logger.info(f"Applying migration to schema version {target_version}")

        try:
            conn.execute("BEGIN")

            if target_version == 1:
                _migrate_to_v1(conn)
            else:
                raise ValueError(f"No migration defined for version {target_version}")

            timestamp = utc_timestamp()
            conn.execute(
                "INSERT INTO schema_version (version, applied_at) VALUES (?, ?)",
                (target_version, timestamp),
            )
            conn.commit()
            logger.info(
                f"Successfully migrated to schema version {target_version} at {timestamp}"
            )

        except Exception as e:
            conn.rollback()
            logger.error(
                f"Migration to version {target_version} failed: {e}", exc_info=True
            )
            raise sqlite3.Error(
                f"Failed to migrate database to version {target_version}: {e}"
            ) from e


def _migrate_to_v1(conn: sqlite3.Connection) -> None:
    """
    Create the initial tracking schema.

    Note:
        Called by apply_migrations() inside a transaction. Uses individual
        execute() calls because executescript() would commit implicitly.
    """
    intervals = ", ".join(f"'{value}'" for value in INTERVALS)
    statuses = ", ".join(f"'{status.value}'" for status in RunStatus)
    providers = ", ".join(f"'{name}'" for name in PROVIDER_NAMES)

    conn.execute("""
        CREATE TABLE IF NOT EXISTS domains (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            owner_id TEXT NOT NULL,
            name TEXT NOT NULL,
            domain_url TEXT NOT NULL,
            created_at TEXT NOT NULL
        )
    """)

    conn.execute("""
        CREATE TABLE IF NOT EXISTS prompt_sets (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            owner_id TEXT NOT NULL,
            name TEXT NOT NULL,
            prompts TEXT NOT NULL,
            created_at TEXT NOT NULL
        )
    """)

    conn.execute(f"""
        CREATE TABLE IF NOT EXISTS tracking_configs (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            owner_id TEXT NOT NULL,
            domain_id INTEGER NOT NULL,
            prompt_set_id INTEGER NOT NULL,
            interval TEXT NOT NULL CHECK (interval IN ({intervals})),
            next_run_at TEXT,
            country TEXT,
            created_at TEXT NOT NULL,
            FOREIGN KEY (domain_id) REFERENCES domains(id) ON DELETE CASCADE,
            FOREIGN KEY (prompt_set_id) REFERENCES prompt_sets(id) ON DELETE CASCADE
        )
    """)

    conn.execute(f"""
        CREATE TABLE IF NOT EXISTS tracking_runs (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            config_id INTEGER NOT NULL,
            status TEXT NOT NULL CHECK (status IN ({statuses})),
            started_at TEXT NOT NULL,
            completed_at TEXT,
            FOREIGN KEY (config_id) REFERENCES tracking_configs(id) ON DELETE CASCADE
        )
    """)

    conn.execute(f"""
        CREATE TABLE IF NOT EXISTS tracking_results (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            run_id INTEGER NOT NULL,
            provider TEXT NOT NULL CHECK (provider IN ({providers})),
            prompt TEXT NOT NULL,
            response TEXT NOT NULL,
            mention_count INTEGER NOT NULL CHECK (mention_count >= 0),
            visibility_score INTEGER NOT NULL
                CHECK (visibility_score BETWEEN 0 AND 100),
            citations TEXT NOT NULL DEFAULT '[]',
            sentiment TEXT,
            sentiment_score INTEGER,
            created_at TEXT NOT NULL,
            FOREIGN KEY (run_id) REFERENCES tracking_runs(id) ON DELETE CASCADE
        )
    """)

    conn.execute("""
        CREATE TABLE IF NOT EXISTS subscriptions (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            owner_id TEXT NOT NULL,
            plan TEXT NOT NULL,
            current_period_start TEXT NOT NULL,
            current_period_end TEXT NOT NULL,
            created_at TEXT NOT NULL
        )
    """)

    conn.execute("""
        CREATE TABLE IF NOT EXISTS cited_domains (
            hostname TEXT PRIMARY KEY,
            first_seen_at TEXT NOT NULL,
            last_seen_at TEXT NOT NULL,
            citation_count INTEGER NOT NULL DEFAULT 0
        )
    """)

    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_configs_next_run ON tracking_configs(next_run_at)"
    )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_configs_owner ON tracking_configs(owner_id)"
    )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_runs_config ON tracking_runs(config_id)"
    )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_results_run ON tracking_results(run_id)"
    )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_results_created ON tracking_results(created_at)"
    )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_subscriptions_owner ON subscriptions(owner_id)"
    )


def _ts(value: str | None) -> datetime | None:
    return parse_timestamp(value) if value else None


# ============================================================================
# Domains and prompt sets
# ============================================================================


def insert_domain(
    conn: sqlite3.Connection, owner_id: str, name: str, domain_url: str
) -> Domain:
    """Insert a tracked domain. name is the brand name used for matching."""
    if not domain_url or domain_url.isspace():
        raise ValueError("domain_url cannot be empty")

    created_at = utc_timestamp()
    cursor = conn.execute(
        "INSERT INTO domains (owner_id, name, domain_url, created_at) VALUES (?, ?, ?, ?)",
        (owner_id, name, domain_url.strip(), created_at),
    )
    logger.debug(f"Inserted domain {cursor.lastrowid} ({domain_url}) for {owner_id}")
    return Domain(cursor.lastrowid, owner_id, name, domain_url.strip(), parse_timestamp(created_at))


def get_domain(conn: sqlite3.Connection, domain_id: int) -> Domain | None:
    row = conn.execute(
        "SELECT id, owner_id, name, domain_url, created_at FROM domains WHERE id = ?",
        (domain_id,),
    ).fetchone()
    if row is None:
        return None
    return Domain(row["id"], row["owner_id"], row["name"], row["domain_url"], _ts(row["created_at"]))


def insert_prompt_set(
    conn: sqlite3.Connection, owner_id: str, name: str, prompts: list[str]
) -> PromptSet:
    """
    Insert a prompt set.

    Raises:
        ValueError: If prompts is empty or contains blank prompts
    """
    cleaned = [prompt.strip() for prompt in prompts]
    if not cleaned:
        raise ValueError("A prompt set needs at least one prompt")
    if any(not prompt for prompt in cleaned):
        raise ValueError("Prompts cannot be empty")

    created_at = utc_timestamp()
    cursor = conn.execute(
        "INSERT INTO prompt_sets (owner_id, name, prompts, created_at) VALUES (?, ?, ?, ?)",
        (owner_id, name, json.dumps(cleaned), created_at),
    )
    return PromptSet(cursor.lastrowid, owner_id, name, cleaned, parse_timestamp(created_at))


def get_prompt_set(conn: sqlite3.Connection, prompt_set_id: int) -> PromptSet | None:
    row = conn.execute(
        "SELECT id, owner_id, name, prompts, created_at FROM prompt_sets WHERE id = ?",
        (prompt_set_id,),
    ).fetchone()
    if row is None:
        return None
    return PromptSet(
        row["id"], row["owner_id"], row["name"], json.loads(row["prompts"]), _ts(row["created_at"])
    )


# ============================================================================
# Tracking configs
# ============================================================================

_CONFIG_COLUMNS = (
    "id, owner_id, domain_id, prompt_set_id, interval, next_run_at, country, created_at"
)


def _config_from_row(row: sqlite3.Row) -> TrackingConfig:
    return TrackingConfig(
        id=row["id"],
        owner_id=row["owner_id"],
        domain_id=row["domain_id"],
        prompt_set_id=row["prompt_set_id"],
        interval=row["interval"],
        next_run_at=_ts(row["next_run_at"]),
        country=row["country"],
        created_at=_ts(row["created_at"]),
    )


def insert_tracking_config(
    conn: sqlite3.Connection,
    owner_id: str,
    domain_id: int,
    prompt_set_id: int,
    interval: str,
    next_run_at: datetime | None = None,
    country: str | None = None,
) -> TrackingConfig:
    """
    Insert a tracking config.

    Raises:
        ValueError: If interval is not daily/weekly/monthly/on_demand or the
            country is not supported
    """
    if interval not in INTERVALS:
        raise ValueError(
            f"Invalid interval '{interval}'. Must be one of: {', '.join(INTERVALS)}"
        )
    if country is not None:
        country = country.strip().upper()
        if country not in COUNTRIES:
            raise ValueError(
                f"Unsupported country '{country}'. Supported: {', '.join(COUNTRIES)}"
            )

    created_at = utc_timestamp()
    cursor = conn.execute(
        """
        INSERT INTO tracking_configs (
            owner_id, domain_id, prompt_set_id, interval, next_run_at, country, created_at
        ) VALUES (?, ?, ?, ?, ?, ?, ?)
        """,
        (
            owner_id,
            domain_id,
            prompt_set_id,
            interval,
            format_timestamp(next_run_at) if next_run_at else None,
            country,
            created_at,
        ),
    )
    logger.debug(f"Inserted tracking config {cursor.lastrowid} ({interval}) for {owner_id}")
    return get_tracking_config(conn, cursor.lastrowid)


def get_tracking_config(conn: sqlite3.Connection, config_id: int) -> TrackingConfig | None:
    row = conn.execute(
        f"SELECT {_CONFIG_COLUMNS} FROM tracking_configs WHERE id = ?", (config_id,)
    ).fetchone()
    return _config_from_row(row) if row else None


def get_first_config_for_owner(
    conn: sqlite3.Connection, owner_id: str
) -> TrackingConfig | None:
    """Return the owner's oldest tracking config, if any."""
    row = conn.execute(
        f"SELECT {_CONFIG_COLUMNS} FROM tracking_configs WHERE owner_id = ? ORDER BY id LIMIT 1",
        (owner_id,),
    ).fetchone()
    return _config_from_row(row) if row else None


def list_due_configs(conn: sqlite3.Connection, now: datetime) -> list[TrackingConfig]:
    """
    Return every recurring config whose next_run_at is at or before now, oldest first.

    on_demand configs are never due; their next_run_at carries no schedule.
    """
    rows = conn.execute(
        f"""
        SELECT {_CONFIG_COLUMNS} FROM tracking_configs
        WHERE next_run_at IS NOT NULL AND next_run_at <= ?
          AND interval != 'on_demand'
        ORDER BY next_run_at, id
        """,
        (format_timestamp(now),),
    ).fetchall()
    return [_config_from_row(row) for row in rows]


def update_next_run_at(
    conn: sqlite3.Connection, config_id: int, next_run_at: datetime | None
) -> None:
    cursor = conn.execute(
        "UPDATE tracking_configs SET next_run_at = ? WHERE id = ?",
        (format_timestamp(next_run_at) if next_run_at else None, config_id),
    )
    if cursor.rowcount == 0:
        raise DatabaseQueryError(f"Tracking config {config_id} does not exist")


# ============================================================================
# Runs
# ============================================================================


def _run_from_row(row: sqlite3.Row) -> TrackingRun:
    return TrackingRun(
        id=row["id"],
        config_id=row["config_id"],
        status=RunStatus(row["status"]),
        started_at=parse_timestamp(row["started_at"]),
        completed_at=_ts(row["completed_at"]),
    )


def create_run(
    conn: sqlite3.Connection, config_id: int, started_at: datetime
) -> TrackingRun:
    """Create a run directly in the running state."""
    cursor = conn.execute(
        "INSERT INTO tracking_runs (config_id, status, started_at) VALUES (?, ?, ?)",
        (config_id, RunStatus.RUNNING.value, format_timestamp(started_at)),
    )
    logger.debug(f"Created run {cursor.lastrowid} for config {config_id}")
    return get_run(conn, cursor.lastrowid)


def finish_run(
    conn: sqlite3.Connection,
    run_id: int,
    status: RunStatus,
    completed_at: datetime,
) -> None:
    """
    Move a running run to completed or failed.

    Raises:
        ValueError: If status is not terminal
        DatabaseQueryError: If the run does not exist or is no longer running
    """
    if status not in (RunStatus.COMPLETED, RunStatus.FAILED):
        raise ValueError(f"Runs can only finish as completed or failed, got: {status}")

    cursor = conn.execute(
        """
        UPDATE tracking_runs SET status = ?, completed_at = ?
        WHERE id = ? AND status = ?
        """,
        (status.value, format_timestamp(completed_at), run_id, RunStatus.RUNNING.value),
    )
    if cursor.rowcount == 0:
        raise DatabaseQueryError(f"Run {run_id} does not exist or is not running")


def get_run(conn: sqlite3.Connection, run_id: int) -> TrackingRun | None:
    row = conn.execute(
        "SELECT id, config_id, status, started_at, completed_at FROM tracking_runs WHERE id = ?",
        (run_id,),
    ).fetchone()
    return _run_from_row(row) if row else None


def list_runs_for_config(conn: sqlite3.Connection, config_id: int) -> list[TrackingRun]:
    rows = conn.execute(
        """
        SELECT id, config_id, status, started_at, completed_at FROM tracking_runs
        WHERE config_id = ? ORDER BY id
        """,
        (config_id,),
    ).fetchall()
    return [_run_from_row(row) for row in rows]


# ============================================================================
# Results
# ============================================================================


def insert_result(conn: sqlite3.Connection, result: TrackingResult) -> int:
    """
    Append one result row.

    Returns:
        int: id of the inserted row
    """
    cursor = conn.execute(
        """
        INSERT INTO tracking_results (
            run_id, provider, prompt, response, mention_count, visibility_score,
            citations, sentiment, sentiment_score, created_at
        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            result.run_id,
            str(result.provider),
            result.prompt,
            result.response,
            result.mention_count,
            result.visibility_score,
            json.dumps(result.citations),
            result.sentiment,
            result.sentiment_score,
            format_timestamp(result.created_at) if result.created_at else utc_timestamp(),
        ),
    )
    return cursor.lastrowid


def list_results(conn: sqlite3.Connection, run_id: int) -> list[TrackingResult]:
    rows = conn.execute(
        """
        SELECT id, run_id, provider, prompt, response, mention_count, visibility_score,
               citations, sentiment, sentiment_score, created_at
        FROM tracking_results WHERE run_id = ? ORDER BY id
        """,
        (run_id,),
    ).fetchall()
    return [
        TrackingResult(
            run_id=row["run_id"],
            provider=row["provider"],
            prompt=row["prompt"],
            response=row["response"],
            mention_count=row["mention_count"],
            visibility_score=row["visibility_score"],
            citations=json.loads(row["citations"]),
            sentiment=row["sentiment"],
            sentiment_score=row["sentiment_score"],
            id=row["id"],
            created_at=_ts(row["created_at"]),
        )
        for row in rows
    ]


def count_executed_prompts(
    conn: sqlite3.Connection,
    owner_id: str,
    period_start: datetime,
    period_end: datetime,
) -> int:
    """
    Count distinct (run, prompt) pairs among the owner's results in a period.

    A prompt answered by four providers in one run counts once.
    """
    row = conn.execute(
        """
        SELECT COUNT(*) FROM (
            SELECT DISTINCT r.run_id, r.prompt
            FROM tracking_results r
            JOIN tracking_runs tr ON tr.id = r.run_id
            JOIN tracking_configs c ON c.id = tr.config_id
            WHERE c.owner_id = ? AND r.created_at >= ? AND r.created_at <= ?
        )
        """,
        (owner_id, format_timestamp(period_start), format_timestamp(period_end)),
    ).fetchone()
    return row[0]


# ============================================================================
# Subscriptions
# ============================================================================


def insert_subscription(
    conn: sqlite3.Connection,
    owner_id: str,
    plan: str,
    current_period_start: datetime,
    current_period_end: datetime,
) -> Subscription:
    if current_period_end <= current_period_start:
        raise ValueError("current_period_end must be after current_period_start")

    created_at = utc_timestamp()
    cursor = conn.execute(
        """
        INSERT INTO subscriptions (
            owner_id, plan, current_period_start, current_period_end, created_at
        ) VALUES (?, ?, ?, ?, ?)
        """,
        (
            owner_id,
            plan,
            format_timestamp(current_period_start),
            format_timestamp(current_period_end),
            created_at,
        ),
    )
    return Subscription(
        owner_id,
        plan,
        current_period_start,
        current_period_end,
        id=cursor.lastrowid,
        created_at=parse_timestamp(created_at),
    )


def get_active_subscription(conn: sqlite3.Connection, owner_id: str) -> Subscription | None:
    """Return the owner's newest subscription row, if any."""
    row = conn.execute(
        """
        SELECT id, owner_id, plan, current_period_start, current_period_end, created_at
        FROM subscriptions WHERE owner_id = ? ORDER BY id DESC LIMIT 1
        """,
        (owner_id,),
    ).fetchone()
    if row is None:
        return None
    return Subscription(
        owner_id=row["owner_id"],
        plan=row["plan"],
        current_period_start=parse_timestamp(row["current_period_start"]),
        current_period_end=parse_timestamp(row["current_period_end"]),
        id=row["id"],
        created_at=_ts(row["created_at"]),
    )


# ============================================================================
# Cited domains
# ============================================================================


def upsert_cited_domains(
    conn: sqlite3.Connection, hostnames: Iterable[str], seen_at: datetime
) -> int:
    """
    Record hostnames as cited, bumping counts for known ones.

    Returns:
        int: Number of hostnames written
    """
    timestamp = format_timestamp(seen_at)
    written = 0
    for hostname in hostnames:
        conn.execute(
            """
            INSERT INTO cited_domains (hostname, first_seen_at, last_seen_at, citation_count)
            VALUES (?, ?, ?, 1)
            ON CONFLICT(hostname) DO UPDATE SET
                last_seen_at = excluded.last_seen_at,
                citation_count = citation_count + 1
            """,
            (hostname, timestamp, timestamp),
        )
        written += 1
    return written


def list_cited_domains(conn: sqlite3.Connection) -> list[CitedDomain]:
    rows = conn.execute(
        """
        SELECT hostname, first_seen_at, last_seen_at, citation_count
        FROM cited_domains ORDER BY citation_count DESC, hostname
        """
    ).fetchall()
    return [
        CitedDomain(
            hostname=row["hostname"],
            first_seen_at=parse_timestamp(row["first_seen_at"]),
            last_seen_at=parse_timestamp(row["last_seen_at"]),
            citation_count=row["citation_count"],
        )
        for row in rows
    ]
