"""
Ingest Logger Module
Buffered structured log sink for pipeline diagnostics.

Entries are held in memory and written in one batch when the buffer fills
(100 entries by default) or on the periodic flush (30s by default).
While the sink is failing, automatic flushes wait a full flush interval
between attempts and the buffer is capped, dropping the oldest entries.
Every entry is also mirrored to the standard logger.
"""

import asyncio
import json
import logging
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

import psycopg2
from psycopg2.extras import RealDictCursor, execute_values

logger = logging.getLogger(__name__)

LEVELS = ('debug', 'info', 'warn', 'error')

_STD_LEVELS = {
    'debug': logging.DEBUG,
    'info': logging.INFO,
    'warn': logging.WARNING,
    'error': logging.ERROR,
}

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS ingest_logs (
    id BIGSERIAL PRIMARY KEY,
    source VARCHAR(50) NOT NULL,
    job_id VARCHAR(64),
    level VARCHAR(10) NOT NULL,
    message TEXT NOT NULL,
    metadata JSONB,
    timestamp TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
CREATE INDEX IF NOT EXISTS idx_ingest_logs_source ON ingest_logs(source);
CREATE INDEX IF NOT EXISTS idx_ingest_logs_level ON ingest_logs(level);
CREATE INDEX IF NOT EXISTS idx_ingest_logs_timestamp ON ingest_logs(timestamp);
"""


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _limit_metadata(metadata: Optional[Dict]) -> Optional[Dict]:
    """Cap long string values so a single entry cannot bloat the table"""
    if not metadata:
        return None
    limited = {}
    for key, value in metadata.items():
        if isinstance(value, str) and len(value) > 500:
            limited[key] = value[:500] + "..."
        else:
            limited[key] = value
    return limited


class MemoryLogSink:
    """In-process sink for development and tests"""

    def __init__(self):
        self.entries: List[Dict] = []

    def write_batch(self, entries: List[Dict]):
        self.entries.extend(dict(e) for e in entries)

    def _filtered(self, source=None, level=None, start=None, end=None) -> List[Dict]:
        rows = self.entries
        if source:
            rows = [r for r in rows if r['source'] == source]
        if level:
            rows = [r for r in rows if r['level'] == level]
        if start:
            rows = [r for r in rows if r['timestamp'] >= start]
        if end:
            rows = [r for r in rows if r['timestamp'] <= end]
        return rows

    def query(self, source=None, level=None, start=None, end=None, limit=100, offset=0) -> Dict:
        rows = sorted(
            self._filtered(source, level, start, end),
            key=lambda r: r['timestamp'],
            reverse=True,
        )
        return {'logs': rows[offset:offset + limit], 'total': len(rows)}

    def stats(self, source=None) -> Dict:
        rows = self._filtered(source=source)
        since = _utcnow() - timedelta(hours=24)
        by_level: Dict[str, int] = {}
        by_source: Dict[str, int] = {}
        for row in rows:
            by_level[row['level']] = by_level.get(row['level'], 0) + 1
            by_source[row['source']] = by_source.get(row['source'], 0) + 1
        return {
            'total_logs': len(rows),
            'logs_by_level': by_level,
            'logs_by_source': by_source,
            'recent_errors': sum(1 for r in rows if r['level'] == 'error' and r['timestamp'] >= since),
        }

    def cleanup(self, days_old: int) -> int:
        cutoff = _utcnow() - timedelta(days=days_old)
        before = len(self.entries)
        self.entries = [e for e in self.entries if e['timestamp'] >= cutoff]
        return before - len(self.entries)


class PostgresLogSink:
    """Writes log batches to the ingest_logs table"""

    def __init__(self, db_url: str):
        """
        Args:
            db_url: PostgreSQL connection string
        """
        self.db_url = db_url

    def _get_db_conn(self):
        """Get database connection"""
        return psycopg2.connect(self.db_url, connect_timeout=5)

    def ensure_schema(self):
        conn = self._get_db_conn()
        try:
            with conn.cursor() as cur:
                cur.execute(SCHEMA_SQL)
            conn.commit()
        finally:
            conn.close()

    def write_batch(self, entries: List[Dict]):
        conn = self._get_db_conn()
        try:
            with conn.cursor() as cur:
                execute_values(cur, """
                    INSERT INTO ingest_logs (source, job_id, level, message, metadata, timestamp)
                    VALUES %s
                """, [
                    (
                        e['source'],
                        e.get('job_id'),
                        e['level'],
                        e['message'],
                        json.dumps(e['metadata'], default=str) if e.get('metadata') else None,
                        e['timestamp'],
                    )
                    for e in entries
                ])
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    @staticmethod
    def _where(source=None, level=None, start=None, end=None):
        conditions = ["1=1"]
        params: List[Any] = []
        if source:
            conditions.append("source = %s")
            params.append(source)
        if level:
            conditions.append("level = %s")
            params.append(level)
        if start:
            conditions.append("timestamp >= %s")
            params.append(start)
        if end:
            conditions.append("timestamp <= %s")
            params.append(end)
        return " AND ".join(conditions), params

    def query(self, source=None, level=None, start=None, end=None, limit=100, offset=0) -> Dict:
        where, params = self._where(source, level, start, end)
        conn = self._get_db_conn()
        try:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute(f"SELECT COUNT(*) AS total FROM ingest_logs WHERE {where}", params)
                total = cur.fetchone()['total']
                cur.execute(f"""
                    SELECT source, job_id, level, message, metadata, timestamp
                    FROM ingest_logs
                    WHERE {where}
                    ORDER BY timestamp DESC
                    LIMIT %s OFFSET %s
                """, params + [limit, offset])
                logs = [dict(row) for row in cur.fetchall()]
            return {'logs': logs, 'total': total}
        finally:
            conn.close()

    def stats(self, source=None) -> Dict:
        where, params = self._where(source=source)
        conn = self._get_db_conn()
        try:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute(f"SELECT COUNT(*) AS total FROM ingest_logs WHERE {where}", params)
                total = cur.fetchone()['total']

                cur.execute(f"""
                    SELECT level, COUNT(*) AS count FROM ingest_logs
                    WHERE {where} GROUP BY level
                """, params)
                by_level = {row['level']: row['count'] for row in cur.fetchall()}

                cur.execute(f"""
                    SELECT source, COUNT(*) AS count FROM ingest_logs
                    WHERE {where} GROUP BY source
                """, params)
                by_source = {row['source']: row['count'] for row in cur.fetchall()}

                cur.execute(f"""
                    SELECT COUNT(*) AS count FROM ingest_logs
                    WHERE {where} AND level = 'error' AND timestamp >= NOW() - INTERVAL '24 hours'
                """, params)
                recent_errors = cur.fetchone()['count']

            return {
                'total_logs': total,
                'logs_by_level': by_level,
                'logs_by_source': by_source,
                'recent_errors': recent_errors,
            }
        finally:
            conn.close()

    def cleanup(self, days_old: int) -> int:
        conn = self._get_db_conn()
        try:
            with conn.cursor() as cur:
                cur.execute(
                    "DELETE FROM ingest_logs WHERE timestamp < NOW() - (%s * INTERVAL '1 day')",
                    (days_old,),
                )
                deleted = cur.rowcount
            conn.commit()
            return deleted
        finally:
            conn.close()


class IngestLogger:
    """Buffered structured logger for ingestion runs"""

    def __init__(
        self,
        sink,
        buffer_size: int = 100,
        flush_interval: float = 30.0,
        max_buffer: Optional[int] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Args:
            sink: MemoryLogSink or PostgresLogSink
            buffer_size: Flush once this many entries are buffered
            flush_interval: Seconds between periodic flushes
            max_buffer: Most entries held while the sink is failing (default 5x buffer_size)
            clock: Monotonic time source for the retry hold-off
        """
        self.sink = sink
        self.buffer_size = buffer_size
        self.flush_interval = flush_interval
        self.max_buffer = max(max_buffer or buffer_size * 5, buffer_size)
        self._clock = clock
        self._buffer: List[Dict] = []
        self._task: Optional[asyncio.Task] = None
        self._retry_at = 0.0
        self.dropped = 0
        self._dropped_reported = 0

    @property
    def pending(self) -> int:
        return len(self._buffer)

    def log(
        self,
        source: str,
        level: str,
        message: str,
        metadata: Optional[Dict] = None,
        job_id: Optional[str] = None,
    ):
        if level not in LEVELS:
            raise ValueError(f"Unknown log level '{level}'")

        entry = {
            'source': source,
            'job_id': job_id,
            'level': level,
            'message': message,
            'metadata': _limit_metadata(metadata),
            'timestamp': _utcnow(),
        }
        self._buffer.append(entry)
        self._cap_buffer()

        job_part = f" [{job_id}]" if job_id else ""
        logger.log(_STD_LEVELS[level], f"[{source}]{job_part} {message}")

        if len(self._buffer) >= self.buffer_size and self._clock() >= self._retry_at:
            self.flush()

    def debug(self, source: str, message: str, metadata: Optional[Dict] = None, job_id: Optional[str] = None):
        self.log(source, 'debug', message, metadata, job_id)

    def info(self, source: str, message: str, metadata: Optional[Dict] = None, job_id: Optional[str] = None):
        self.log(source, 'info', message, metadata, job_id)

    def warn(self, source: str, message: str, metadata: Optional[Dict] = None, job_id: Optional[str] = None):
        self.log(source, 'warn', message, metadata, job_id)

    def error(self, source: str, message: str, metadata: Optional[Dict] = None, job_id: Optional[str] = None):
        self.log(source, 'error', message, metadata, job_id)

    def flush(self) -> int:
        """
        Write buffered entries to the sink.

        On failure the entries go back to the front of the buffer so the
        next flush retries them, and buffer-full flushes are held off for
        flush_interval seconds.

        Returns:
            Number of entries written
        """
        if not self._buffer:
            return 0

        batch = self._buffer
        self._buffer = []
        try:
            self.sink.write_batch(batch)
        except Exception as e:
            logger.error(f"[ingest_logger] Failed to flush {len(batch)} log entries: {e}")
            self._buffer = batch + self._buffer
            self._retry_at = self._clock() + self.flush_interval
            self._cap_buffer()
            return 0
        self._retry_at = 0.0
        if self.dropped > self._dropped_reported:
            logger.warning(f"[ingest_logger] Sink recovered, {self.dropped - self._dropped_reported} log entries were dropped")
            self._dropped_reported = self.dropped
        return len(batch)

    def _cap_buffer(self):
        overflow = len(self._buffer) - self.max_buffer
        if overflow <= 0:
            return
        if self.dropped == self._dropped_reported:
            logger.warning(f"[ingest_logger] Log buffer full ({self.max_buffer}), dropping oldest entries")
        del self._buffer[:overflow]
        self.dropped += overflow

    async def _flush_loop(self):
        while True:
            await asyncio.sleep(self.flush_interval)
            self.flush()

    def start(self):
        """Start the periodic flush task"""
        if self._task is None:
            self._task = asyncio.create_task(self._flush_loop())

    async def shutdown(self):
        """Stop the periodic flush and write whatever is left"""
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        self.flush()

    def query(
        self,
        source: Optional[str] = None,
        level: Optional[str] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> Dict:
        """
        Query persisted entries, newest first. Buffered entries are flushed first.

        Returns:
            {'logs': [...], 'total': matching count}
        """
        self.flush()
        return self.sink.query(source=source, level=level, start=start, end=end, limit=limit, offset=offset)

    def stats(self, source: Optional[str] = None) -> Dict:
        self.flush()
        return self.sink.stats(source=source)

    def cleanup(self, days_old: int = 30) -> int:
        deleted = self.sink.cleanup(days_old)
        logger.info(f"[ingest_logger] Removed {deleted} log entries older than {days_old} days")
        return deleted
