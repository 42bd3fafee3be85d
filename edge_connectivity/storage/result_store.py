"""Result Store

Durable store for TestRun records, test evidence, metrics samples, and
verification results, addressed by a connection string. Results are keyed by
run id and written at most once.
"""

import asyncio
import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

import aiosqlite

from ..models import (
    EventKind,
    MetricSample,
    RunStatus,
    TestEvent,
    TestRun,
    VerificationResult
)

logger = logging.getLogger(__name__)


class StorageError(Exception):
    """Base exception for storage operations"""
    pass


class DatabaseConnectionError(StorageError):
    """Raised when the store cannot be reached"""
    pass


def parse_connection_string(connection_string: str) -> str:
    """Extract the database path from a store connection string

    Supports "sqlite:///relative/or/absolute.db" and "sqlite://:memory:".

    Raises:
        StorageError: For unsupported connection strings
    """
    value = (connection_string or "").strip()
    if value == "sqlite://:memory:":
        return ":memory:"
    if value.startswith("sqlite:///"):
        path = value[len("sqlite:///"):]
        if path:
            return path
    raise StorageError("Unsupported storage connection string (expected sqlite:///<path>)")


class ResultStore:
    """SQLite-backed store for connectivity test evidence

    Features:
    - Async operations using aiosqlite
    - Evidence events indexed by run id
    - Idempotent verification results (one per run id)
    - Metrics samples for the Store upload target
    """

    def __init__(self, connection_string: str):
        """Initialize result store

        Args:
            connection_string: Store connection string (sqlite:///<path>)
        """
        self.database_path = parse_connection_string(connection_string)
        if self.database_path != ":memory:":
            Path(self.database_path).parent.mkdir(parents=True, exist_ok=True)
        self._connection: Optional[aiosqlite.Connection] = None
        self._lock = asyncio.Lock()

        logger.info(f"Initialized result store: {self.database_path}")

    @property
    def connected(self) -> bool:
        return self._connection is not None

    async def connect(self) -> None:
        """Open the database and create tables"""
        if self._connection is not None:
            return
        try:
            self._connection = await aiosqlite.connect(self.database_path)
            await self._create_tables()
            logger.info(f"Connected to result store: {self.database_path}")
        except Exception as e:
            logger.error(f"Failed to connect to result store: {e}")
            self._connection = None
            raise DatabaseConnectionError(f"Failed to connect to result store: {e}")

    async def disconnect(self) -> None:
        """Close database connection"""
        if self._connection:
            await self._connection.close()
            self._connection = None
            logger.info("Disconnected from result store")

    async def _create_tables(self) -> None:
        """Create database tables if they don't exist"""
        await self._connection.execute("""
            CREATE TABLE IF NOT EXISTS test_runs (
                run_id TEXT PRIMARY KEY,
                architecture TEXT NOT NULL,
                release_label TEXT,
                build_number TEXT,
                protocol TEXT NOT NULL,
                status TEXT NOT NULL,
                error TEXT,
                created_at TEXT NOT NULL,
                started_at TEXT,
                updated_at DATETIME DEFAULT CURRENT_TIMESTAMP
            )
        """)

        await self._connection.execute("""
            CREATE TABLE IF NOT EXISTS test_events (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                run_id TEXT NOT NULL,
                module TEXT NOT NULL,
                kind TEXT NOT NULL,
                sequence INTEGER,
                timestamp TEXT NOT NULL,
                payload TEXT
            )
        """)

        await self._connection.execute("""
            CREATE TABLE IF NOT EXISTS verification_results (
                run_id TEXT PRIMARY KEY,
                architecture TEXT NOT NULL,
                verdict TEXT NOT NULL,
                result TEXT NOT NULL,
                evaluated_at TEXT NOT NULL
            )
        """)

        await self._connection.execute("""
            CREATE TABLE IF NOT EXISTS metric_samples (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                run_id TEXT NOT NULL,
                endpoint TEXT NOT NULL,
                timestamp TEXT NOT NULL,
                payload TEXT NOT NULL
            )
        """)

        for index_sql in [
            "CREATE INDEX IF NOT EXISTS idx_events_run ON test_events(run_id)",
            "CREATE INDEX IF NOT EXISTS idx_events_run_module ON test_events(run_id, module, kind)",
            "CREATE INDEX IF NOT EXISTS idx_metrics_run ON metric_samples(run_id)",
        ]:
            await self._connection.execute(index_sql)

        await self._connection.commit()

    def _require_connection(self) -> aiosqlite.Connection:
        if not self._connection:
            raise StorageError("Result store not connected")
        return self._connection

    async def save_run(self, run: TestRun, error: Optional[str] = None) -> None:
        """Insert or update a TestRun record"""
        connection = self._require_connection()
        try:
            async with self._lock:
                await connection.execute("""
                    INSERT INTO test_runs
                    (run_id, architecture, release_label, build_number, protocol, status,
                     error, created_at, started_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(run_id) DO UPDATE SET
                        status = excluded.status,
                        error = excluded.error,
                        started_at = excluded.started_at,
                        updated_at = CURRENT_TIMESTAMP
                """, (
                    run.run_id,
                    run.architecture,
                    run.release_label,
                    run.build_number,
                    run.protocol.value,
                    run.status.value,
                    error,
                    run.created_at.isoformat(),
                    run.started_at.isoformat() if run.started_at else None
                ))
                await connection.commit()
        except Exception as e:
            logger.error(f"Failed to save run {run.run_id}: {e}")
            raise StorageError(f"Failed to save run: {e}")

    async def get_run_status(self, run_id: str) -> Optional[Dict[str, Any]]:
        """Get the stored status of a TestRun"""
        connection = self._require_connection()
        try:
            cursor = await connection.execute(
                "SELECT status, error FROM test_runs WHERE run_id = ?", (run_id,)
            )
            row = await cursor.fetchone()
        except Exception as e:
            raise StorageError(f"Failed to get run status: {e}")

        if row is None:
            return None
        return {"status": RunStatus(row[0]), "error": row[1]}

    async def record_event(self, event: TestEvent) -> None:
        """Append one evidence event"""
        await self.record_events([event])

    async def record_events(self, events: Iterable[TestEvent]) -> int:
        """Append evidence events

        Returns:
            Number of events written
        """
        connection = self._require_connection()
        rows = [
            (
                event.run_id,
                event.module,
                event.kind.value,
                event.sequence,
                event.timestamp.isoformat(),
                json.dumps(event.payload) if event.payload else None
            )
            for event in events
        ]
        if not rows:
            return 0

        try:
            async with self._lock:
                await connection.executemany("""
                    INSERT INTO test_events (run_id, module, kind, sequence, timestamp, payload)
                    VALUES (?, ?, ?, ?, ?, ?)
                """, rows)
                await connection.commit()
            return len(rows)
        except Exception as e:
            logger.error(f"Failed to record events: {e}")
            raise StorageError(f"Failed to record events: {e}")

    async def get_events(
        self,
        run_id: str,
        kinds: Optional[Iterable[EventKind]] = None,
        module: Optional[str] = None
    ) -> List[TestEvent]:
        """Retrieve evidence events for a run sorted by timestamp

        Args:
            run_id: TestRun identifier
            kinds: Event kind filter (optional)
            module: Module filter (optional)
        """
        connection = self._require_connection()

        query = "SELECT run_id, module, kind, sequence, timestamp, payload FROM test_events WHERE run_id = ?"
        params: List[Any] = [run_id]

        if kinds:
            kind_values = [kind.value for kind in kinds]
            query += f" AND kind IN ({', '.join('?' for _ in kind_values)})"
            params.extend(kind_values)

        if module:
            query += " AND module = ?"
            params.append(module)

        query += " ORDER BY timestamp ASC, id ASC"

        try:
            cursor = await connection.execute(query, params)
            rows = await cursor.fetchall()
        except Exception as e:
            logger.error(f"Failed to retrieve events for {run_id}: {e}")
            raise StorageError(f"Failed to retrieve events: {e}")

        events = [
            TestEvent(
                run_id=row[0],
                module=row[1],
                kind=EventKind(row[2]),
                sequence=row[3],
                timestamp=datetime.fromisoformat(row[4]),
                payload=json.loads(row[5]) if row[5] else {}
            )
            for row in rows
        ]
        logger.debug(f"Retrieved {len(events)} events for run {run_id}")
        return events

    async def save_verification_result(self, result: VerificationResult) -> bool:
        """Persist a verification result unless one already exists

        Returns:
            True if this call wrote the result
        """
        connection = self._require_connection()
        try:
            async with self._lock:
                cursor = await connection.execute("""
                    INSERT OR IGNORE INTO verification_results
                    (run_id, architecture, verdict, result, evaluated_at)
                    VALUES (?, ?, ?, ?, ?)
                """, (
                    result.run_id,
                    result.architecture,
                    result.verdict.value,
                    result.model_dump_json(),
                    result.evaluated_at.isoformat()
                ))
                await connection.commit()
            written = cursor.rowcount > 0
        except Exception as e:
            logger.error(f"Failed to save verification result for {result.run_id}: {e}")
            raise StorageError(f"Failed to save verification result: {e}")

        if written:
            logger.info(f"Stored verification result for run {result.run_id}: {result.verdict.value}")
        else:
            logger.info(f"Verification result for run {result.run_id} already stored")
        return written

    async def get_verification_result(self, run_id: str) -> Optional[VerificationResult]:
        """Get the stored verification result for a run"""
        connection = self._require_connection()
        try:
            cursor = await connection.execute(
                "SELECT result FROM verification_results WHERE run_id = ?", (run_id,)
            )
            row = await cursor.fetchone()
        except Exception as e:
            raise StorageError(f"Failed to get verification result: {e}")

        if row is None:
            return None
        return VerificationResult.model_validate_json(row[0])

    async def count_verification_results(self, run_id: str) -> int:
        """Number of verification results stored for a run (0 or 1)"""
        connection = self._require_connection()
        try:
            cursor = await connection.execute(
                "SELECT COUNT(*) FROM verification_results WHERE run_id = ?", (run_id,)
            )
            row = await cursor.fetchone()
        except Exception as e:
            raise StorageError(f"Failed to count verification results: {e}")
        return row[0]

    async def store_metric_samples(self, run_id: str, samples: List[MetricSample]) -> int:
        """Persist scraped metric samples for a run"""
        connection = self._require_connection()
        rows = [
            (run_id, sample.endpoint, sample.timestamp.isoformat(), json.dumps(sample.payload))
            for sample in samples
        ]
        if not rows:
            return 0
        try:
            async with self._lock:
                await connection.executemany("""
                    INSERT INTO metric_samples (run_id, endpoint, timestamp, payload)
                    VALUES (?, ?, ?, ?)
                """, rows)
                await connection.commit()
            return len(rows)
        except Exception as e:
            logger.error(f"Failed to store metric samples: {e}")
            raise StorageError(f"Failed to store metric samples: {e}")

    async def get_metric_samples(self, run_id: str) -> List[MetricSample]:
        """Metric samples stored for a run in the order they were written"""
        connection = self._require_connection()
        try:
            cursor = await connection.execute(
                "SELECT endpoint, timestamp, payload FROM metric_samples WHERE run_id = ? ORDER BY id",
                (run_id,)
            )
            rows = await cursor.fetchall()
        except Exception as e:
            logger.error(f"Failed to retrieve metric samples for {run_id}: {e}")
            raise StorageError(f"Failed to retrieve metric samples: {e}")
        return [
            MetricSample(
                endpoint=row[0],
                timestamp=datetime.fromisoformat(row[1]),
                payload=json.loads(row[2])
            )
            for row in rows
        ]

    async def __aenter__(self):
        """Async context manager entry"""
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Async context manager exit"""
        await self.disconnect()
