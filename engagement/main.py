"""Main entry point for the engagement engine"""
import logging
import asyncio

from prometheus_client import start_http_server

from engagement.config import (
    LOG_LEVEL,
    METRICS_ENABLED,
    METRICS_PORT,
    REWARD_CATALOG_PATH,
    STORAGE_BACKEND,
    validate_config,
)
from engagement.db.base import Storage
from engagement.gamification.rewards import RewardCatalog, load_catalog
from engagement.scheduler.maintenance import MaintenanceScheduler
from engagement.services.engagement_service import EngagementService

# Configure logging
logging.basicConfig(
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    level=getattr(logging, LOG_LEVEL)
)

logger = logging.getLogger(__name__)


def create_storage() -> Storage:
    """Storage backend selected by STORAGE_BACKEND"""
    if STORAGE_BACKEND == "postgres":
        from engagement.db.postgres import PostgresStorage
        return PostgresStorage()

    from engagement.db.memory import InMemoryStorage
    return InMemoryStorage()


def create_service(storage: Storage) -> EngagementService:
    catalog = RewardCatalog(load_catalog(REWARD_CATALOG_PATH)) if REWARD_CATALOG_PATH else RewardCatalog()
    return EngagementService(storage, catalog=catalog)


async def main() -> None:
    """Main application entry point"""
    service = None
    scheduler = None
    try:
        # Validate configuration
        logger.info("Validating configuration...")
        validate_config()

        if METRICS_ENABLED:
            logger.info(f"Starting Prometheus exporter on port {METRICS_PORT}...")
            start_http_server(METRICS_PORT)

        # Initialize storage and catalog
        logger.info(f"Initializing {STORAGE_BACKEND} storage...")
        service = create_service(create_storage())
        await service.initialize()

        # Background sweeps
        scheduler = MaintenanceScheduler(service)
        await scheduler.start()

        # Keep running until interrupted
        logger.info("Engagement engine is running. Press Ctrl+C to stop.")
        await asyncio.Event().wait()

    except KeyboardInterrupt:
        logger.info("Shutting down...")
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
    finally:
        # Cleanup
        if scheduler:
            await scheduler.stop()

        if service:
            logger.info("Closing storage...")
            await service.close()

        logger.info("Shutdown complete")


def run() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    run()
