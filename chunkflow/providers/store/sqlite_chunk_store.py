"""SQLite-backed chunk store.

Persists chunk records and job rows to a local SQLite database at
``data/chunks.db``.  Uses ``aiosqlite`` for async I/O and opens a fresh
connection per operation, so several worker pools (even in separate
processes) can share one database file.

Claiming is a two-step optimistic update inside an ``IMMEDIATE``
transaction: candidate rows are selected, then each one is moved to
``processing`` with a compare-and-swap on ``(status, updated_at)``.  A row
whose status or timestamp changed since it was read is simply skipped, so a
chunk is handed to at most one claimant.
"""

from __future__ import annotations

import json
from collections import defaultdict
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

import aiosqlite
import structlog

from chunkflow.interfaces.chunk_store import ChunkWriteResult, IChunkStore
from chunkflow.models.chunk import (
    ChunkMetadata,
    ChunkRecord,
    ChunkStatus,
    Language,
    TokenRange,
    utc_now,
)
from chunkflow.utils.errors import ChunkNotFoundError, StaleClaimError, StoreUnavailableError

logger = structlog.get_logger(logger_name=__name__)

_DEFAULT_DB_PATH = Path("data/chunks.db")

_TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"

# Over-fetch candidates so that rows lost to concurrent claimers don't
# leave this claimant short.
_CANDIDATE_FACTOR = 4

_CREATE_TABLES_SQL = [
    """\
CREATE TABLE IF NOT EXISTS chunks (
    chunk_id     TEXT    PRIMARY KEY,
    document_id  TEXT    NOT NULL,
    chunk_index  INTEGER NOT NULL,
    text         TEXT    NOT NULL,
    token_count  INTEGER NOT NULL,
    token_start  INTEGER NOT NULL,
    token_end    INTEGER NOT NULL,
    job_id       TEXT    NOT NULL,
    source_type  TEXT    NOT NULL,
    url          TEXT,
    filename     TEXT,
    title        TEXT,
    language     TEXT    NOT NULL,
    checksum     TEXT    NOT NULL,
    status       TEXT    NOT NULL,
    vector       TEXT,
    error        TEXT,
    attempts     INTEGER NOT NULL DEFAULT 0,
    retry_at     TEXT,
    worker_id    TEXT,
    created_at   TEXT    NOT NULL,
    updated_at   TEXT    NOT NULL,
    UNIQUE(document_id, chunk_index),
    CHECK (token_end > token_start),
    CHECK (vector IS NULL OR error IS NULL)
);
""",
    """\
CREATE TABLE IF NOT EXISTS jobs (
    job_id        TEXT    PRIMARY KEY,
    document_id   TEXT    NOT NULL,
    chunk_count   INTEGER NOT NULL,
    created_at    TEXT    NOT NULL,
    abandoned_at  TEXT
);
""",
]

_CREATE_INDICES_SQL = [
    "CREATE INDEX IF NOT EXISTS idx_chunks_document_checksum ON chunks(document_id, checksum);",
    "CREATE INDEX IF NOT EXISTS idx_chunks_job ON chunks(job_id);",
    "CREATE INDEX IF NOT EXISTS idx_chunks_status ON chunks(status, retry_at, updated_at);",
]

_INSERT_CHUNK_SQL = """\
INSERT INTO chunks (
    chunk_id, document_id, chunk_index, text, token_count, token_start, token_end,
    job_id, source_type, url, filename, title, language, checksum,
    status, vector, error, attempts, retry_at, worker_id, created_at, updated_at
)
VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?);
"""

_UPSERT_JOB_SQL = """\
INSERT INTO jobs (job_id, document_id, chunk_count, created_at)
VALUES (?, ?, ?, ?)
ON CONFLICT(job_id)
DO UPDATE SET chunk_count = jobs.chunk_count + excluded.chunk_count;
"""

_SELECT_CLAIMABLE_SQL = """\
SELECT chunk_id, status, updated_at
FROM chunks
WHERE (
        status = 'queued'
     OR (status = 'retrying' AND retry_at <= ?)
     OR (status = 'processing' AND updated_at <= ?)
  )
  AND job_id NOT IN (SELECT job_id FROM jobs WHERE abandoned_at IS NOT NULL)
ORDER BY created_at, chunk_index
LIMIT ?;
"""

_CLAIM_SQL = """\
UPDATE chunks
SET status     = 'processing',
    worker_id  = ?,
    error      = NULL,
    retry_at   = NULL,
    updated_at = ?
WHERE chunk_id = ? AND status = ? AND updated_at = ?;
"""

_SET_OUTCOME_SQL = """\
UPDATE chunks
SET status     = ?,
    vector     = ?,
    error      = ?,
    attempts   = ?,
    retry_at   = ?,
    worker_id  = NULL,
    updated_at = ?
WHERE chunk_id = ? AND status = 'processing' AND updated_at = ?;
"""

_SELECT_CHUNK_SQL = "SELECT * FROM chunks WHERE chunk_id = ?;"


def _to_db(value: datetime | None) -> str | None:
    """Fixed-width UTC timestamps so SQL string comparison orders correctly."""
    if value is None:
        return None
    return value.astimezone(timezone.utc).strftime(_TIMESTAMP_FORMAT)  # noqa: UP017


def _from_db(value: str | None) -> datetime | None:
    if value is None:
        return None
    return datetime.strptime(value, _TIMESTAMP_FORMAT).replace(tzinfo=timezone.utc)  # noqa: UP017


def _row_to_chunk(row: aiosqlite.Row) -> ChunkRecord:
    r = dict(row)
    return ChunkRecord(
        chunk_id=r["chunk_id"],
        document_id=r["document_id"],
        chunk_index=r["chunk_index"],
        text=r["text"],
        token_count=r["token_count"],
        token_range=TokenRange(start=r["token_start"], end=r["token_end"]),
        metadata=ChunkMetadata(
            source_type=r["source_type"],
            url=r["url"],
            filename=r["filename"],
            title=r["title"],
            language=Language(r["language"]),
            checksum=r["checksum"],
            job_id=r["job_id"],
        ),
        status=ChunkStatus(r["status"]),
        vector=json.loads(r["vector"]) if r["vector"] is not None else None,
        error=r["error"],
        attempts=r["attempts"],
        retry_at=_from_db(r["retry_at"]),
        worker_id=r["worker_id"],
        created_at=_from_db(r["created_at"]),
        updated_at=_from_db(r["updated_at"]),
    )


def _chunk_to_params(chunk: ChunkRecord) -> tuple[Any, ...]:
    m = chunk.metadata
    return (
        chunk.chunk_id,
        chunk.document_id,
        chunk.chunk_index,
        chunk.text,
        chunk.token_count,
        chunk.token_range.start,
        chunk.token_range.end,
        m.job_id,
        m.source_type,
        m.url,
        m.filename,
        m.title,
        m.language.value,
        m.checksum,
        chunk.status.value,
        json.dumps(chunk.vector) if chunk.vector is not None else None,
        chunk.error,
        chunk.attempts,
        _to_db(chunk.retry_at),
        chunk.worker_id,
        _to_db(chunk.created_at),
        _to_db(chunk.updated_at),
    )


class SQLiteChunkStore(IChunkStore):
    """SQLite-backed chunk persistence.

    Parameters
    ----------
    db_path:
        Database file; parent directories are created on :meth:`initialize`.
    stale_after_seconds:
        A ``processing`` chunk whose ``updated_at`` is older than this is
        claimable again (its worker is presumed dead).
    busy_timeout:
        Seconds a connection waits on a locked database before giving up.
    clock:
        Returns the current UTC time; injectable for tests.
    """

    def __init__(
        self,
        db_path: str | Path = _DEFAULT_DB_PATH,
        stale_after_seconds: float = 300.0,
        busy_timeout: float = 30.0,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._db_path = Path(db_path)
        self._stale_after = timedelta(seconds=stale_after_seconds)
        self._busy_timeout = busy_timeout
        self._clock = clock

    async def initialize(self) -> None:
        """Create the chunks/jobs tables and indices if they don't exist."""
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        async with self._connection() as db:
            await db.execute("PRAGMA journal_mode=WAL;")
            for table_sql in _CREATE_TABLES_SQL:
                await db.execute(table_sql)
            for idx_sql in _CREATE_INDICES_SQL:
                await db.execute(idx_sql)
            await db.commit()
        logger.info("chunk_db_initialized", path=str(self._db_path))

    async def close(self) -> None:
        # Connections are per-operation; nothing is held open.
        return None

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def create_batch(
        self,
        chunks: list[ChunkRecord],
        replace: bool = False,
    ) -> list[ChunkWriteResult]:
        by_document: dict[str, list[ChunkRecord]] = defaultdict(list)
        for chunk in chunks:
            by_document[chunk.document_id].append(chunk)

        results: dict[str, ChunkWriteResult] = {}
        async with self._connection() as db:
            for document_id, doc_chunks in by_document.items():
                failed_chunk: str | None = None
                reason = ""
                await db.execute("BEGIN IMMEDIATE;")
                try:
                    if replace:
                        await db.execute("DELETE FROM chunks WHERE document_id = ?;", (document_id,))
                    for chunk in doc_chunks:
                        try:
                            await db.execute(_INSERT_CHUNK_SQL, _chunk_to_params(chunk))
                        except aiosqlite.IntegrityError as exc:
                            failed_chunk, reason = chunk.chunk_id, f"integrity error: {exc}"
                            break
                    if failed_chunk is None:
                        now = _to_db(self._clock())
                        job_counts: dict[str, int] = defaultdict(int)
                        for chunk in doc_chunks:
                            job_counts[chunk.metadata.job_id] += 1
                        for job_id, count in job_counts.items():
                            await db.execute(_UPSERT_JOB_SQL, (job_id, document_id, count, now))
                except BaseException:
                    await db.rollback()
                    raise

                if failed_chunk is not None:
                    await db.rollback()
                    for chunk in doc_chunks:
                        msg = reason if chunk.chunk_id == failed_chunk else "batch rolled back"
                        results[chunk.chunk_id] = ChunkWriteResult(chunk.chunk_id, False, msg)
                    logger.warning(
                        "chunk_batch_rejected",
                        document_id=document_id,
                        chunk_id=failed_chunk,
                        reason=reason,
                    )
                    continue

                await db.commit()
                for chunk in doc_chunks:
                    results[chunk.chunk_id] = ChunkWriteResult(chunk.chunk_id, True)
                logger.debug(
                    "chunk_batch_created",
                    document_id=document_id,
                    count=len(doc_chunks),
                    replace=replace,
                )

        return [results[chunk.chunk_id] for chunk in chunks]

    async def claim_next(self, limit: int, worker_id: str) -> list[ChunkRecord]:
        if limit <= 0:
            return []
        now = self._clock()
        now_s = _to_db(now)
        stale_s = _to_db(now - self._stale_after)

        claimed_ids: list[str] = []
        async with self._connection() as db:
            await db.execute("BEGIN IMMEDIATE;")
            try:
                cursor = await db.execute(
                    _SELECT_CLAIMABLE_SQL, (now_s, stale_s, limit * _CANDIDATE_FACTOR)
                )
                candidates = await cursor.fetchall()
                for row in candidates:
                    if len(claimed_ids) >= limit:
                        break
                    cursor = await db.execute(
                        _CLAIM_SQL,
                        (worker_id, now_s, row["chunk_id"], row["status"], row["updated_at"]),
                    )
                    if cursor.rowcount == 1:
                        claimed_ids.append(row["chunk_id"])
                await db.commit()
            except BaseException:
                await db.rollback()
                raise

            claimed: list[ChunkRecord] = []
            for chunk_id in claimed_ids:
                cursor = await db.execute(_SELECT_CHUNK_SQL, (chunk_id,))
                row = await cursor.fetchone()
                if row is not None:
                    claimed.append(_row_to_chunk(row))

        if claimed:
            logger.debug("chunks_claimed", worker_id=worker_id, count=len(claimed))
        return claimed

    async def mark_vectorized(
        self,
        chunk_id: str,
        vector: list[float],
        worker_id: str | None = None,
    ) -> ChunkRecord:
        return await self._apply_outcome(
            chunk_id,
            worker_id,
            lambda chunk, now: chunk.vectorize(vector, now=now),
        )

    async def mark_failed(
        self,
        chunk_id: str,
        error: str,
        next_status: ChunkStatus,
        retry_at: datetime | None = None,
        worker_id: str | None = None,
    ) -> ChunkRecord:
        return await self._apply_outcome(
            chunk_id,
            worker_id,
            lambda chunk, now: chunk.fail(error, next_status, retry_at=retry_at, now=now),
        )

    async def abandon_job(self, job_id: str) -> bool:
        async with self._connection() as db:
            cursor = await db.execute(
                "UPDATE jobs SET abandoned_at = COALESCE(abandoned_at, ?) WHERE job_id = ?;",
                (_to_db(self._clock()), job_id),
            )
            await db.commit()
            found = cursor.rowcount == 1
        logger.info("job_abandoned", job_id=job_id, found=found)
        return found

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_job_chunk_statuses(self, job_id: str) -> dict[str, ChunkStatus]:
        async with self._connection() as db:
            cursor = await db.execute(
                "SELECT chunk_id, status FROM chunks WHERE job_id = ? ORDER BY chunk_index;",
                (job_id,),
            )
            rows = await cursor.fetchall()
        return {row["chunk_id"]: ChunkStatus(row["status"]) for row in rows}

    async def get_chunk(self, chunk_id: str) -> ChunkRecord | None:
        async with self._connection() as db:
            cursor = await db.execute(_SELECT_CHUNK_SQL, (chunk_id,))
            row = await cursor.fetchone()
        return _row_to_chunk(row) if row is not None else None

    async def get_document_checksums(self, document_id: str) -> set[str]:
        async with self._connection() as db:
            cursor = await db.execute(
                "SELECT checksum FROM chunks WHERE document_id = ?;",
                (document_id,),
            )
            rows = await cursor.fetchall()
        return {row["checksum"] for row in rows}

    async def is_job_abandoned(self, job_id: str) -> bool:
        async with self._connection() as db:
            cursor = await db.execute(
                "SELECT abandoned_at FROM jobs WHERE job_id = ?;",
                (job_id,),
            )
            row = await cursor.fetchone()
        return row is not None and row["abandoned_at"] is not None

    def get_provider_name(self) -> str:
        return "sqlite_chunk_store"

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    @asynccontextmanager
    async def _connection(self) -> AsyncIterator[aiosqlite.Connection]:
        """Open a connection, translating driver outages into StoreUnavailableError."""
        try:
            async with aiosqlite.connect(str(self._db_path), timeout=self._busy_timeout) as db:
                db.row_factory = aiosqlite.Row
                yield db
        except aiosqlite.OperationalError as exc:
            raise StoreUnavailableError(
                message=f"SQLite operation failed: {exc}",
                provider_name=self.get_provider_name(),
            ) from exc

    async def _apply_outcome(
        self,
        chunk_id: str,
        worker_id: str | None,
        transition: Callable[[ChunkRecord, datetime], ChunkRecord],
    ) -> ChunkRecord:
        """Read a processing chunk, apply *transition*, write it back with CAS."""
        async with self._connection() as db:
            await db.execute("BEGIN IMMEDIATE;")
            try:
                cursor = await db.execute(_SELECT_CHUNK_SQL, (chunk_id,))
                row = await cursor.fetchone()
                if row is None:
                    raise ChunkNotFoundError(chunk_id, provider_name=self.get_provider_name())
                current = _row_to_chunk(row)
                if current.status is not ChunkStatus.PROCESSING or (
                    worker_id is not None and current.worker_id != worker_id
                ):
                    raise StaleClaimError(chunk_id, provider_name=self.get_provider_name())

                updated = transition(current, self._clock())
                cursor = await db.execute(
                    _SET_OUTCOME_SQL,
                    (
                        updated.status.value,
                        json.dumps(updated.vector) if updated.vector is not None else None,
                        updated.error,
                        updated.attempts,
                        _to_db(updated.retry_at),
                        _to_db(updated.updated_at),
                        chunk_id,
                        row["updated_at"],
                    ),
                )
                if cursor.rowcount != 1:
                    raise StaleClaimError(chunk_id, provider_name=self.get_provider_name())
                await db.commit()
            except BaseException:
                await db.rollback()
                raise
        return updated
