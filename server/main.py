"""
Worker process for the DAG workflow engine.

Starts the database, cache and queue, then runs the step worker and the
recovery sweeper until interrupted.
"""

import asyncio
import signal
from contextlib import asynccontextmanager

from core.container import container
from core.logging import configure_logging, get_logger

# Initialize settings and logging
settings = container.settings()
configure_logging(settings)
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan():
    """Service lifespan management."""
    # Startup
    logger.info("Starting workflow engine worker")

    await container.database().startup()
    await container.cache().startup()

    worker = container.worker()
    sweeper = container.sweeper()
    await worker.start()
    await sweeper.start()

    logger.info("Services started successfully",
                queue_backend=settings.queue_backend,
                cache_backend=container.cache().backend,
                concurrency=settings.worker_concurrency)
    try:
        yield
    finally:
        # Shutdown: stop consuming before closing shared resources
        await sweeper.stop()
        await worker.stop()
        await container.queue().close()
        await container.cache().shutdown()
        await container.database().shutdown()
        logger.info("Services shutdown complete")


async def serve() -> None:
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            # Windows event loops have no signal handler support
            pass

    async with lifespan():
        await stop.wait()


def run() -> None:
    """Console entry point."""
    try:
        asyncio.run(serve())
    except KeyboardInterrupt:
        logger.info("Interrupted")


if __name__ == "__main__":
    run()
