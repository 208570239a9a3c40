from __future__ import annotations

import logging
import os

from alembic import command
from alembic.config import Config

logger = logging.getLogger(__name__)

ALEMBIC_CONFIG = os.getenv("ALEMBIC_CONFIG", "alembic.ini")


def run_upgrade_head(config_path: str = ALEMBIC_CONFIG, database_url: str | None = None) -> None:
    config = Config(config_path)
    if database_url:
        config.set_main_option("sqlalchemy.url", database_url)
        config.attributes["url_overridden"] = True
    logger.info("upgrading schema to head using %s", config_path)
    command.upgrade(config, "head")


if __name__ == "__main__":
    run_upgrade_head()
