import asyncio
import signal
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from loguru import logger

from pixiv_crawler.api.server import create_app, start_api_server
from pixiv_crawler.credentials import CredentialPool
from pixiv_crawler.monitoring.metrics_server import start_metrics_server
from pixiv_crawler.pixiv_client import PixivClient
from pixiv_crawler.scheduler import Orchestrator
from pixiv_crawler.storage.artwork_storage_manager import ArtworkStorageManager
from pixiv_crawler.storage.database import close_database, init_database
from pixiv_crawler.storage.task_state_manager import TaskStateManager
from pixiv_crawler.utils.config_loader import Config, load_config
from pixiv_crawler.utils.logger import setup_logger
from pixiv_crawler.worker import Worker


# -------------------------------
# SESSIONS
# -------------------------------
@asynccontextmanager
async def worker_session(
    config: Config, stop_event: Optional[asyncio.Event] = None
) -> AsyncIterator[Worker]:
    pool = CredentialPool(config.credential_profiles)
    await init_database(config.database_url)
    try:
        async with PixivClient(
            pool,
            delay_range_ms=(config.request_delay_min_ms, config.request_delay_max_ms),
            timeout=config.request_timeout,
        ) as client:
            yield Worker(
                config,
                pool,
                client,
                TaskStateManager(),
                ArtworkStorageManager(),
                stop_event=stop_event,
            )
    finally:
        await close_database()


@asynccontextmanager
async def orchestrator_session(
    config: Config, stop_event: Optional[asyncio.Event] = None
) -> AsyncIterator[Orchestrator]:
    await init_database(config.database_url)
    try:
        async with Orchestrator(config, TaskStateManager(), stop_event=stop_event) as orchestrator:
            yield orchestrator
    finally:
        await close_database()


def _install_signal_handlers(shutdown_event: asyncio.Event) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, shutdown_event.set)


# -------------------------------
# WORKER NODE
# -------------------------------
async def main(config: Optional[Config] = None) -> None:
    config = config or load_config()
    setup_logger(config.log_level, config.log_path, config.node_id)

    logger.info("Starting pixiv crawler node...")

    shutdown_event = asyncio.Event()
    async with worker_session(config, shutdown_event) as worker:
        api_runner, _ = await start_api_server(
            create_app(worker), config.api_host, config.api_port
        )
        _install_signal_handlers(shutdown_event)
        logger.info(f"Worker API listening on {config.api_host}:{config.api_port}")

        try:
            await shutdown_event.wait()
        except asyncio.CancelledError:
            pass
        finally:
            await api_runner.shutdown()
            await api_runner.cleanup()

    logger.info("Pixiv crawler node stopped.")


# -------------------------------
# ORCHESTRATOR
# -------------------------------
async def run_scheduler(config: Optional[Config] = None) -> None:
    config = config or load_config()
    setup_logger(config.log_level, config.log_path, config.node_id)

    shutdown_event = asyncio.Event()
    metrics_runner, _ = await start_metrics_server(port=config.metrics_port)
    try:
        async with orchestrator_session(config, shutdown_event) as orchestrator:
            _install_signal_handlers(shutdown_event)
            await orchestrator.run_forever()
    finally:
        await metrics_runner.shutdown()
        await metrics_runner.cleanup()


async def run_job(job: str, config: Optional[Config] = None):
    config = config or load_config()
    setup_logger(config.log_level, config.log_path, config.node_id)
    async with orchestrator_session(config) as orchestrator:
        return await orchestrator.run_job(job)


async def run_cron(expression: str, config: Optional[Config] = None):
    config = config or load_config()
    setup_logger(config.log_level, config.log_path, config.node_id)
    async with orchestrator_session(config) as orchestrator:
        return await orchestrator.handle_cron(expression)


# -------------------------------
# ENTRYPOINT
# -------------------------------
if __name__ == "__main__":
    asyncio.run(main())
