import argparse
import asyncio
import logging
import sys
from contextlib import asynccontextmanager

from fastapi import FastAPI

from cycle_engine.config import settings
from cycle_engine.database.database import close_db, init_db
from cycle_engine.logging_config import setup_logging
from cycle_engine.services.cycle_scheduler import JOB_NAMES, CycleScheduler
from cycle_engine.services.execution_guard import ExecutionGuard
from cycle_engine.webserver.cycle_webhook import create_cycle_webhook_router


logger = logging.getLogger(__name__)


def create_app(poll_seconds: int = 60) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await init_db()
        guard = ExecutionGuard.from_url()
        scheduler = CycleScheduler(guard)
        app.state.scheduler = scheduler
        if settings.CYCLE_ENGINE_ENABLED:
            scheduler.start(poll_seconds)
        try:
            yield
        finally:
            await scheduler.stop()
            await guard.close()
            await close_db()

    app = FastAPI(title='Traffic Cycle Engine', lifespan=lifespan)
    if settings.is_cycle_webhook_enabled():
        app.include_router(create_cycle_webhook_router())
    else:
        logger.warning('Cycle webhook disabled (CYCLE_WEBHOOK_ENABLED or CYCLE_WEBHOOK_SECRET not set)')
    return app


async def run_ticks(job_names: list[str], force: bool) -> int:
    await init_db()
    guard = ExecutionGuard.from_url()
    scheduler = CycleScheduler(guard)
    exit_code = 0
    try:
        for job_name in job_names:
            try:
                result = await scheduler.run_job(job_name, force=force)
            except Exception:
                logger.exception('Job %s failed', job_name)
                exit_code = 1
                continue
            logger.info('Job %s: %s', job_name, result if result is not None else 'skipped')
    finally:
        await guard.close()
        await close_db()
    return exit_code


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description='Subscription cycle engine')
    subparsers = parser.add_subparsers(dest='command', required=True)

    serve = subparsers.add_parser('serve', help='run webhooks and the in-process scheduler')
    serve.add_argument('--host', default=settings.WEB_API_HOST)
    serve.add_argument('--port', type=int, default=settings.WEB_API_PORT)
    serve.add_argument('--poll-seconds', type=int, default=60)

    tick = subparsers.add_parser('tick', help='run a single job once (for external cron)')
    tick.add_argument('job', choices=JOB_NAMES)
    tick.add_argument('--force', action='store_true', help='ignore cadence')

    tick_all = subparsers.add_parser('tick-all', help='run every due job once')
    tick_all.add_argument('--force', action='store_true', help='ignore cadence')

    args = parser.parse_args(argv)
    setup_logging()

    if args.command == 'serve':
        import uvicorn

        uvicorn.run(create_app(args.poll_seconds), host=args.host, port=args.port, log_config=None)
        return 0

    job_names = [args.job] if args.command == 'tick' else list(JOB_NAMES)
    return asyncio.run(run_ticks(job_names, args.force))


if __name__ == '__main__':
    sys.exit(main())
