"""Analysis worker process entry point."""

import asyncio
import logging
import signal

from capture_service.config import get_settings
from capture_service.db.session import async_session_maker, engine, init_db
from capture_service.services.analysis_worker import AnalysisWorker, default_worker_id
from capture_service.services.vision import HttpVisionAnalyzer

settings = get_settings()

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


async def run_workers() -> None:
    """Run the configured number of analysis workers until SIGINT/SIGTERM."""
    logger.info("Starting capture analysis workers...")

    # Initialize database
    try:
        await init_db()
        logger.info("Database initialized successfully")
    except Exception as e:
        logger.error(f"Database initialization failed: {e}")
        raise

    if not settings.analysis_enabled:
        logger.warning("Analysis is disabled (ANALYSIS_ENABLED=false); no workers started")
        await engine.dispose()
        return

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop_event.set)

    analyzer = HttpVisionAnalyzer.from_settings()
    base_id = default_worker_id()
    workers = [
        AnalysisWorker(
            analyzer,
            session_factory=async_session_maker,
            worker_id=f"{base_id}-{n}",
        )
        for n in range(settings.analysis_worker_concurrency)
    ]
    logger.info(
        f"Running {len(workers)} worker(s) against {settings.vision_model_name}/"
        f"{settings.vision_model_version}"
    )

    try:
        await asyncio.gather(*(worker.run_forever(stop_event) for worker in workers))
    finally:
        # Shutdown
        logger.info("Shutting down capture analysis workers...")
        await analyzer.aclose()
        await engine.dispose()


if __name__ == "__main__":
    asyncio.run(run_workers())
