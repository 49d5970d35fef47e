from typing import Optional

from loguru import logger
from tortoise import Tortoise, connections

from pixiv_crawler.exceptions import ConfigurationError
from pixiv_crawler.utils.db_utils import redact_dsn, to_asyncpg_dsn


MODEL_MODULES = ["pixiv_crawler.storage.models"]


async def init_database(database_url: Optional[str], *, generate_schemas: bool = True) -> None:
    """
    Connect Tortoise to the remote store and create/verify the tables.
    """
    if not database_url:
        raise ConfigurationError("DATABASE_URL is required to reach the data store")

    db_url = to_asyncpg_dsn(database_url)
    logger.info(f"Initializing data store at {redact_dsn(db_url)}")

    await Tortoise.init(db_url=db_url, modules={"models": MODEL_MODULES})

    if generate_schemas:
        await Tortoise.generate_schemas(safe=True)
        logger.info("pic, pic_task and ranking tables created or verified.")


async def close_database() -> None:
    await connections.close_all()
