"""
Ingestion pipeline: job queue, recurring schedules, workers and storage.

Jobs flow from JobQueue to WorkerPool, which fetches through a source
adapter and hands the raw records to RecordProcessor for normalization,
validation, deduplication and upsert into the ListingStore.
"""

__version__ = "1.0.0"
