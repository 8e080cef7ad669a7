"""
InternScout ingestion service entry point.

Usage:
    python main.py run
    python main.py enqueue internshala --kind full_scrape --max-pages 3
    python main.py status
    python main.py logs --source linkedin --level error
"""
import argparse
import asyncio
import json
import logging
import signal
import sys

from dotenv import load_dotenv

import metrics
from core.config import ConfigError, PipelineSettings, validate_settings
from orchestrator import build_orchestrator
from pipeline.job_queue import ValidationError
from pipeline.jobs import JOB_KINDS

load_dotenv()

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


def _print(data):
    print(json.dumps(data, indent=2, default=str))


async def run_service(settings: PipelineSettings):
    """Run workers and schedules until SIGINT or SIGTERM."""
    orchestrator = build_orchestrator(settings)
    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop_event.set)

    await orchestrator.start()
    logger.info("[internscout] Service running, press Ctrl+C to stop")
    try:
        await stop_event.wait()
    finally:
        await orchestrator.stop()


async def run_once(settings: PipelineSettings, args) -> int:
    """Enqueue one job, process the queue until it drains, report the job."""
    orchestrator = build_orchestrator(settings)
    await orchestrator.start(with_schedules=False)
    try:
        metadata = {'max_pages': args.max_pages} if args.max_pages else None
        try:
            job_id = orchestrator.enqueue(
                args.source,
                url=args.url,
                kind=args.kind,
                priority=args.priority,
                delay_seconds=args.delay,
                metadata=metadata,
            )
        except ValidationError as e:
            logger.error(f"[internscout] Job rejected: {e}")
            return 2
        drained = await orchestrator.drain(timeout=args.timeout)
        if not drained:
            logger.warning(f"[internscout] Queue did not drain within {args.timeout}s")
        job = orchestrator.queue.get(job_id)
        _print(job.to_dict() if job else {'id': job_id, 'state': 'unknown'})
        return 0 if job is not None and job.state.value == 'completed' else 1
    finally:
        await orchestrator.stop()


def show_status(settings: PipelineSettings):
    orchestrator = build_orchestrator(settings)
    status = orchestrator.status()
    status['metrics'] = metrics.metrics_snapshot()
    _print(status)


def show_logs(settings: PipelineSettings, args):
    orchestrator = build_orchestrator(settings)
    if args.stats:
        _print(orchestrator.ingest_logger.stats(source=args.source))
        return
    _print(orchestrator.ingest_logger.query(
        source=args.source,
        level=args.level,
        limit=args.limit,
        offset=args.offset,
    ))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description='InternScout internship ingestion service')
    commands = parser.add_subparsers(dest='command', required=True)

    commands.add_parser('run', help='Run workers and recurring schedules')

    enqueue = commands.add_parser('enqueue', help='Run a single job and wait for it')
    enqueue.add_argument('source', help='Source name (e.g. internshala, linkedin)')
    enqueue.add_argument('--url', help='Listing URL (defaults to the source start page)')
    enqueue.add_argument('--kind', choices=sorted(JOB_KINDS), default='incremental')
    enqueue.add_argument('--priority', type=int, default=0)
    enqueue.add_argument('--delay', type=float, default=0, help='Seconds before the job is eligible')
    enqueue.add_argument('--max-pages', type=int, help='Page limit for full_scrape jobs')
    enqueue.add_argument('--timeout', type=float, default=600, help='Seconds to wait for the queue to drain')

    commands.add_parser('status', help='Show queue, adapter, proxy and store status')

    logs = commands.add_parser('logs', help='Query ingestion logs')
    logs.add_argument('--source')
    logs.add_argument('--level', choices=['debug', 'info', 'warn', 'error'])
    logs.add_argument('--limit', type=int, default=50)
    logs.add_argument('--offset', type=int, default=0)
    logs.add_argument('--stats', action='store_true', help='Show aggregate statistics instead')

    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)

    try:
        settings = PipelineSettings()
        validate_settings(settings)
    except ConfigError as e:
        logger.error(f"[internscout] {e}")
        return 2

    if args.command == 'run':
        asyncio.run(run_service(settings))
        return 0
    if args.command == 'enqueue':
        return asyncio.run(run_once(settings, args))
    if args.command == 'status':
        show_status(settings)
        return 0
    if args.command == 'logs':
        show_logs(settings, args)
        return 0
    return 1


if __name__ == '__main__':
    sys.exit(main())
