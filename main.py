"""Command line interface for running the marketplace API server."""
import asyncio
import logging
import signal
import uvicorn

from config import settings_conf
from database import init_db, close as db_close

# Configure logging
logging.basicConfig(
    level=settings_conf['log_level'],
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# Global instances
server = None
should_exit = False

def handle_shutdown(signum, frame):
    """Handle shutdown signals gracefully."""
    global should_exit
    logger.info("Shutdown signal received. Cleaning up...")
    should_exit = True

class UvicornServer:
    """Wrapper for running uvicorn with proper lifecycle management."""

    def __init__(self, app_path: str = "api:app", host: str = "0.0.0.0", port: int = 8000):
        self.config = uvicorn.Config(
            app_path,
            host=host,
            port=port,
            log_level=settings_conf['log_level'].lower()
        )
        self.server = uvicorn.Server(self.config)

    async def run(self):
        """Run the server in a way that can be stopped."""
        await self.server.serve()

    async def stop(self):
        """Stop the server."""
        self.server.should_exit = True

async def main():
    """Initialize the database and run the API server until a shutdown signal."""
    global server, should_exit

    task = None
    try:
        # Register signal handlers in main thread
        signal.signal(signal.SIGINT, handle_shutdown)
        signal.signal(signal.SIGTERM, handle_shutdown)

        logger.info("Initializing database...")
        await init_db()

        server = UvicornServer(
            host=settings_conf['api_host'],
            port=settings_conf['api_port']
        )
        task = asyncio.create_task(server.run(), name="api")
        logger.info(f"API listening on {settings_conf['api_host']}:{settings_conf['api_port']}")

        # Wait for shutdown signal or server exit
        while not should_exit and not task.done():
            await asyncio.sleep(1)

        if task.done() and not task.cancelled() and task.exception():
            logger.error(f"API server failed with error: {task.exception()}")

        logger.info("Starting cleanup...")

    except Exception as e:
        logger.error(f"Fatal error: {e}")
    finally:
        if server:
            logger.info("Stopping API server...")
            await server.stop()
        if task and not task.done():
            try:
                await asyncio.wait_for(task, timeout=10)
            except asyncio.TimeoutError:
                task.cancel()

        logger.info("Closing database connections...")
        await db_close()

        logger.info("Cleanup complete.")

if __name__ == "__main__":
    asyncio.run(main())
