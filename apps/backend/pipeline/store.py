"""
Listing storage.

Upserts canonical records by natural key (source, external_id) inside one
transaction per batch, skipping records whose content has not changed, and
retires listings that a full sweep no longer observes.
"""

import copy
import logging
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

import psycopg2
from psycopg2.extras import RealDictCursor

logger = logging.getLogger(__name__)

# Fields compared to decide whether an existing listing changed
MUTABLE_FIELDS = (
    'title',
    'organization',
    'description',
    'location',
    'compensation',
    'duration_months',
    'work_mode',
    'application_url',
    'skills',
    'posted_date',
    'deadline',
)

COLUMNS = MUTABLE_FIELDS + ('source', 'external_id', 'is_active')

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS listings (
    id BIGSERIAL PRIMARY KEY,
    source VARCHAR(50) NOT NULL,
    external_id VARCHAR(255) NOT NULL,
    title VARCHAR(200) NOT NULL,
    organization VARCHAR(100) NOT NULL,
    description TEXT,
    location VARCHAR(200),
    compensation INTEGER,
    duration_months INTEGER,
    work_mode VARCHAR(10) NOT NULL,
    skills TEXT[] NOT NULL DEFAULT '{}',
    application_url TEXT NOT NULL,
    posted_date DATE,
    deadline DATE,
    is_active BOOLEAN NOT NULL DEFAULT TRUE,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    UNIQUE (source, external_id)
);
CREATE INDEX IF NOT EXISTS idx_listings_source_active ON listings(source, is_active);
"""


class StorageError(Exception):
    """A batch transaction failed and was rolled back"""
    pass


class StoreResult:
    """Counts and change events from one upsert batch"""

    def __init__(
        self,
        inserted: int = 0,
        updated: int = 0,
        skipped: int = 0,
        errors: Optional[List[str]] = None,
        changes: Optional[List[Tuple[str, Dict]]] = None,
        failed: bool = False,
    ):
        self.inserted = inserted
        self.updated = updated
        self.skipped = skipped
        self.errors = errors or []
        self.changes = changes or []
        self.failed = failed

    @property
    def success(self) -> bool:
        return not self.failed

    def to_dict(self) -> Dict:
        return {
            'success': self.success,
            'inserted': self.inserted,
            'updated': self.updated,
            'skipped': self.skipped,
            'errors': self.errors,
        }


def _comparable(field: str, value: Any) -> Any:
    if field == 'skills':
        return sorted(s.lower() for s in (value or []))
    if isinstance(value, datetime):
        return value.date()
    if value == '':
        return None
    return value


def has_changed(existing: Dict[str, Any], record: Dict[str, Any]) -> bool:
    """True if any mutable field differs or the stored row is inactive."""
    if not existing.get('is_active', True):
        return True
    for field in MUTABLE_FIELDS:
        if _comparable(field, existing.get(field)) != _comparable(field, record.get(field)):
            return True
    return False


class ListingStore:
    """
    Shared upsert algorithm. Backends provide the transaction and row access.
    """

    def __init__(self, on_change: Optional[Callable[[str, Dict], None]] = None):
        """
        Args:
            on_change: Called with ("inserted" | "updated", record) after each commit
        """
        self.on_change = on_change

    @contextmanager
    def _transaction(self):
        raise NotImplementedError
        yield

    def _find(self, tx, source: str, external_id: str) -> Optional[Dict]:
        raise NotImplementedError

    def _insert(self, tx, record: Dict):
        raise NotImplementedError

    def _update(self, tx, record: Dict):
        raise NotImplementedError

    def upsert(self, records: List[Dict[str, Any]]) -> StoreResult:
        """
        Insert new listings and update changed ones in a single transaction.

        Any exception rolls back the whole batch.

        Returns:
            StoreResult with inserted/updated/skipped counts
        """
        if not records:
            return StoreResult()

        inserted = updated = skipped = 0
        changes: List[Tuple[str, Dict]] = []

        try:
            with self._transaction() as tx:
                for record in records:
                    existing = self._find(tx, record['source'], record['external_id'])
                    if existing is None:
                        self._insert(tx, record)
                        inserted += 1
                        changes.append(('inserted', record))
                    elif has_changed(existing, record):
                        self._update(tx, record)
                        updated += 1
                        changes.append(('updated', record))
                    else:
                        skipped += 1
        except Exception as e:
            logger.error(f"[store] Transaction failed, rolled back {len(records)} records: {e}")
            return StoreResult(
                skipped=len(records),
                errors=[f"Transaction failed: {e}"],
                failed=True,
            )

        logger.info(f"[store] Upsert: {inserted} inserted, {updated} updated, {skipped} skipped")
        self._emit(changes)
        return StoreResult(inserted, updated, skipped, changes=changes)

    def _emit(self, changes: List[Tuple[str, Dict]]):
        if not self.on_change:
            return
        for event, record in changes:
            try:
                self.on_change(event, record)
            except Exception as e:
                logger.error(
                    f"[store] Change listener failed for {record.get('source')}/{record.get('external_id')}: {e}",
                    exc_info=True,
                )

    def mark_inactive(self, source: str, active_external_ids: Iterable[str]) -> int:
        raise NotImplementedError

    def cleanup_inactive(self, days_old: int = 30) -> int:
        raise NotImplementedError

    def find_duplicate_groups(self, limit: int = 50) -> List[Dict]:
        raise NotImplementedError

    def stats(self) -> Dict:
        raise NotImplementedError


class MemoryListingStore(ListingStore):
    """Dict-backed store. Transactions snapshot and restore the rows."""

    def __init__(self, on_change: Optional[Callable[[str, Dict], None]] = None):
        super().__init__(on_change)
        self._rows: Dict[Tuple[str, str], Dict] = {}

    @contextmanager
    def _transaction(self):
        snapshot = copy.deepcopy(self._rows)
        try:
            yield self._rows
        except Exception:
            self._rows = snapshot
            raise

    def _find(self, tx, source, external_id):
        row = tx.get((source, external_id))
        return dict(row) if row else None

    def _insert(self, tx, record):
        now = datetime.now(timezone.utc)
        row = {field: copy.copy(record.get(field)) for field in COLUMNS}
        row['is_active'] = True
        row['created_at'] = now
        row['updated_at'] = now
        tx[(record['source'], record['external_id'])] = row

    def _update(self, tx, record):
        row = tx[(record['source'], record['external_id'])]
        for field in MUTABLE_FIELDS:
            row[field] = copy.copy(record.get(field))
        row['is_active'] = True
        row['updated_at'] = datetime.now(timezone.utc)

    def get(self, source: str, external_id: str) -> Optional[Dict]:
        row = self._rows.get((source, external_id))
        return dict(row) if row else None

    def all(self, source: Optional[str] = None) -> List[Dict]:
        return [dict(r) for r in self._rows.values() if source is None or r['source'] == source]

    def mark_inactive(self, source, active_external_ids):
        active = set(active_external_ids)
        now = datetime.now(timezone.utc)
        count = 0
        for (row_source, external_id), row in self._rows.items():
            if row_source == source and row['is_active'] and external_id not in active:
                row['is_active'] = False
                row['updated_at'] = now
                count += 1
        logger.info(f"[store] Marked {count} {source} listings inactive")
        return count

    def cleanup_inactive(self, days_old=30):
        cutoff = datetime.now(timezone.utc) - timedelta(days=days_old)
        stale = [k for k, r in self._rows.items() if not r['is_active'] and r['updated_at'] < cutoff]
        for key in stale:
            del self._rows[key]
        return len(stale)

    def find_duplicate_groups(self, limit=50):
        groups: Dict[Tuple[str, str, str], List[Dict]] = {}
        for row in self._rows.values():
            if not row['is_active']:
                continue
            key = (row['title'].lower(), row['organization'].lower(), (row.get('location') or '').lower())
            groups.setdefault(key, []).append(row)
        result = [
            {
                'title': rows[0]['title'],
                'organization': rows[0]['organization'],
                'location': rows[0].get('location'),
                'count': len(rows),
                'keys': [(r['source'], r['external_id']) for r in rows],
            }
            for rows in groups.values() if len(rows) > 1
        ]
        result.sort(key=lambda g: g['count'], reverse=True)
        return result[:limit]

    def stats(self):
        rows = list(self._rows.values())
        since = datetime.now(timezone.utc) - timedelta(hours=24)
        by_source: Dict[str, int] = {}
        for row in rows:
            by_source[row['source']] = by_source.get(row['source'], 0) + 1
        active = sum(1 for r in rows if r['is_active'])
        return {
            'total': len(rows),
            'active': active,
            'inactive': len(rows) - active,
            'by_source': by_source,
            'recent_additions': sum(1 for r in rows if r['created_at'] >= since),
        }


class PostgresListingStore(ListingStore):
    """psycopg2-backed store over the listings table"""

    def __init__(self, db_url: str, on_change: Optional[Callable[[str, Dict], None]] = None):
        """
        Args:
            db_url: PostgreSQL connection string
            on_change: Change listener
        """
        super().__init__(on_change)
        self.db_url = db_url

    def _get_db_conn(self):
        """Get database connection."""
        return psycopg2.connect(self.db_url, connect_timeout=5)

    def ensure_schema(self):
        conn = self._get_db_conn()
        try:
            with conn.cursor() as cur:
                cur.execute(SCHEMA_SQL)
            conn.commit()
        finally:
            conn.close()

    @contextmanager
    def _transaction(self):
        conn = self._get_db_conn()
        try:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                yield cur
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _find(self, tx, source, external_id):
        # Row lock serializes concurrent batches touching the same key
        tx.execute(f"""
            SELECT {', '.join(MUTABLE_FIELDS)}, is_active
            FROM listings
            WHERE source = %s AND external_id = %s
            FOR UPDATE
        """, (source, external_id))
        row = tx.fetchone()
        return dict(row) if row else None

    @staticmethod
    def _values(record: Dict) -> List[Any]:
        return [record.get(field) if field != 'skills' else list(record.get('skills') or []) for field in MUTABLE_FIELDS]

    def _insert(self, tx, record):
        assignments = ', '.join(f"{field} = EXCLUDED.{field}" for field in MUTABLE_FIELDS)
        tx.execute(f"""
            INSERT INTO listings (source, external_id, {', '.join(MUTABLE_FIELDS)}, is_active, created_at, updated_at)
            VALUES (%s, %s, {', '.join(['%s'] * len(MUTABLE_FIELDS))}, TRUE, NOW(), NOW())
            ON CONFLICT (source, external_id) DO UPDATE SET
                {assignments}, is_active = TRUE, updated_at = NOW()
        """, [record['source'], record['external_id']] + self._values(record))

    def _update(self, tx, record):
        assignments = ', '.join(f"{field} = %s" for field in MUTABLE_FIELDS)
        tx.execute(f"""
            UPDATE listings
            SET {assignments}, is_active = TRUE, updated_at = NOW()
            WHERE source = %s AND external_id = %s
        """, self._values(record) + [record['source'], record['external_id']])

    def mark_inactive(self, source, active_external_ids):
        active = list(active_external_ids)
        conn = self._get_db_conn()
        try:
            with conn.cursor() as cur:
                cur.execute("""
                    UPDATE listings
                    SET is_active = FALSE, updated_at = NOW()
                    WHERE source = %s
                      AND is_active = TRUE
                      AND NOT (external_id = ANY(%s))
                """, (source, active))
                count = cur.rowcount
            conn.commit()
            logger.info(f"[store] Marked {count} {source} listings inactive")
            return count
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def cleanup_inactive(self, days_old=30):
        conn = self._get_db_conn()
        try:
            with conn.cursor() as cur:
                cur.execute("""
                    DELETE FROM listings
                    WHERE is_active = FALSE
                      AND updated_at < NOW() - (%s * INTERVAL '1 day')
                """, (days_old,))
                deleted = cur.rowcount
            conn.commit()
            logger.info(f"[store] Deleted {deleted} inactive listings older than {days_old} days")
            return deleted
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def find_duplicate_groups(self, limit=50):
        conn = self._get_db_conn()
        try:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute("""
                    SELECT MIN(title) AS title, MIN(organization) AS organization,
                           MIN(location) AS location, COUNT(*) AS count,
                           ARRAY_AGG(source || ':' || external_id) AS keys
                    FROM listings
                    WHERE is_active = TRUE
                    GROUP BY LOWER(title), LOWER(organization), LOWER(COALESCE(location, ''))
                    HAVING COUNT(*) > 1
                    ORDER BY count DESC
                    LIMIT %s
                """, (limit,))
                return [dict(row) for row in cur.fetchall()]
        finally:
            conn.close()

    def stats(self):
        conn = self._get_db_conn()
        try:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute("""
                    SELECT COUNT(*) AS total,
                           COUNT(*) FILTER (WHERE is_active) AS active,
                           COUNT(*) FILTER (WHERE created_at >= NOW() - INTERVAL '24 hours') AS recent_additions
                    FROM listings
                """)
                totals = cur.fetchone()
                cur.execute("SELECT source, COUNT(*) AS count FROM listings GROUP BY source")
                by_source = {row['source']: row['count'] for row in cur.fetchall()}
            return {
                'total': totals['total'],
                'active': totals['active'],
                'inactive': totals['total'] - totals['active'],
                'by_source': by_source,
                'recent_additions': totals['recent_additions'],
            }
        finally:
            conn.close()
