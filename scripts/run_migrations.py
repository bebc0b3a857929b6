#!/usr/bin/env python
"""Run Alembic migrations on container startup."""

import logging
import sys
from pathlib import Path

ROOT = Path(__file__).parent.parent

# Add parent directory to path
sys.path.insert(0, str(ROOT))

from alembic.config import Config
from alembic import command

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(message)s",
    datefmt="%H:%M:%S",
)
logger = logging.getLogger(__name__)


def run_migrations(revision: str = "head") -> bool:
    """Upgrade the ranking schema to ``revision``."""
    try:
        logger.info("=" * 60)
        logger.info("RUNNING DATABASE MIGRATIONS")
        logger.info("=" * 60)

        alembic_cfg = Config(str(ROOT / "alembic.ini"))
        alembic_cfg.set_main_option("script_location", str(ROOT / "alembic"))
        command.upgrade(alembic_cfg, revision)

        logger.info(f"Migrations complete - schema at {revision}")
        return True

    except Exception as e:
        logger.error(f"Migration failed: {e}", exc_info=True)
        logger.error("Fix the migration error above and restart the container")
        return False


if __name__ == "__main__":
    target = sys.argv[1] if len(sys.argv) > 1 else "head"
    sys.exit(0 if run_migrations(target) else 1)
