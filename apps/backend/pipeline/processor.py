"""
Record processing: normalize -> validate -> dedupe -> store.

Per-record problems are counted, never raised. A failed store transaction
raises StorageError so the job can be retried as a whole.
"""
import logging
from typing import Any, Callable, Dict, List, Optional

from core.dedupe import deduplicate, find_near_duplicates
from core.ingest_logger import IngestLogger
from core.validator import RecordValidator
from pipeline.store import ListingStore, StorageError

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, str], None]


class ProcessingResult:
    """Outcome of processing one fetched batch"""

    def __init__(self):
        self.processed = 0
        self.normalize_failed = 0
        self.invalid = 0
        self.duplicates = 0
        self.inserted = 0
        self.updated = 0
        self.skipped = 0
        self.deactivated = 0
        self.warnings: List[str] = []
        self.errors: List[str] = []
        self.near_duplicates: List[Dict] = []
        self.active_ids: List[str] = []

    @property
    def failed(self) -> int:
        return self.normalize_failed + self.invalid

    def job_counts(self) -> Dict[str, int]:
        return {
            'records_processed': self.processed,
            'records_added': self.inserted,
            'records_updated': self.updated,
            'records_failed': self.failed,
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            'processed': self.processed,
            'failed': self.failed,
            'duplicates': self.duplicates,
            'inserted': self.inserted,
            'updated': self.updated,
            'skipped': self.skipped,
            'deactivated': self.deactivated,
            'warnings': len(self.warnings),
            'near_duplicates': len(self.near_duplicates),
        }


class RecordProcessor:
    """Runs a batch of raw records from one source through to storage."""

    def __init__(
        self,
        store: ListingStore,
        validator: Optional[RecordValidator] = None,
        ingest_logger: Optional[IngestLogger] = None,
        near_duplicate_score: float = 0.6,
    ):
        self.store = store
        self.validator = validator or RecordValidator()
        self.ingest_logger = ingest_logger
        self.near_duplicate_score = near_duplicate_score

    def _log(self, source: str, level: str, message: str, metadata: Optional[Dict] = None, job_id: Optional[str] = None):
        if self.ingest_logger is not None:
            self.ingest_logger.log(source, level, message, metadata, job_id)

    def process(
        self,
        source: str,
        raw_records: List[Dict[str, Any]],
        normalizer: Callable[[Dict[str, Any]], Dict[str, Any]],
        job_id: Optional[str] = None,
        full_sweep: bool = False,
        progress: Optional[ProgressCallback] = None,
    ) -> ProcessingResult:
        """
        Process raw records fetched from a source.

        Args:
            source: Source name
            raw_records: Records as extracted by the adapter
            normalizer: Raw -> canonical mapping for the source
            job_id: Job the batch belongs to (for log entries)
            full_sweep: Retire stored listings not present in this batch
            progress: Called with (percent, stage) after validation and dedupe

        Returns:
            ProcessingResult

        Raises:
            StorageError: The store transaction failed and was rolled back
        """
        result = ProcessingResult()
        result.processed = len(raw_records)

        # Normalize
        normalized = []
        for raw in raw_records:
            try:
                normalized.append(normalizer(raw))
            except Exception as e:
                result.normalize_failed += 1
                result.errors.append(f"normalize: {e}")
                logger.warning(f"[processor] {source}: failed to normalize {raw.get('external_id')}: {e}")

        # Validate
        batch = self.validator.validate_batch(normalized)
        valid = batch['valid']
        result.invalid = len(batch['invalid'])
        result.warnings = batch['warnings']
        for record, errors in batch['invalid']:
            result.errors.append(f"{record.get('external_id') or '?'}: {'; '.join(errors)}")

        if result.failed:
            self._log(source, 'warn', f"{result.failed} records failed normalization or validation", {
                'normalize_failed': result.normalize_failed,
                'invalid': result.invalid,
                'errors': result.errors[:10],
            }, job_id)
        if result.warnings:
            self._log(source, 'debug', f"{len(result.warnings)} validation warnings", {
                'warnings': result.warnings[:10],
            }, job_id)
        if progress:
            progress(50, 'validated')

        # Dedupe
        result.active_ids = [r['external_id'] for r in valid]
        dedup = deduplicate(valid)
        result.duplicates = len(dedup.duplicates)
        result.near_duplicates = find_near_duplicates(dedup.unique, min_score=self.near_duplicate_score)
        if result.near_duplicates:
            self._log(source, 'info', f"{len(result.near_duplicates)} possible near-duplicate pairs", {
                'pairs': [
                    {'score': p['score'], 'titles': p['titles']}
                    for p in result.near_duplicates[:10]
                ],
            }, job_id)
        if progress:
            progress(75, 'deduplicated')

        # Store
        stored = self.store.upsert(dedup.unique)
        if stored.failed:
            self._log(source, 'error', 'Store transaction failed', {'errors': stored.errors}, job_id)
            raise StorageError('; '.join(stored.errors) or 'Store transaction failed')

        result.inserted = stored.inserted
        result.updated = stored.updated
        result.skipped = stored.skipped

        if full_sweep and result.active_ids:
            result.deactivated = self.store.mark_inactive(source, result.active_ids)

        self._log(source, 'info', (
            f"Processed {result.processed} records: {result.inserted} inserted, "
            f"{result.updated} updated, {result.skipped} unchanged, {result.failed} failed"
        ), result.to_dict(), job_id)
        return result
