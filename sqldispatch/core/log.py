import logging
from typing import Optional

from sqldispatch.core.config import settings

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def configure_logging(level: Optional[str] = None) -> None:
    """Set up console logging and the level of the sqldispatch loggers."""
    level_value = getattr(logging, (level or settings.LOG_LEVEL).upper(), logging.INFO)
    logging.basicConfig(level=level_value, format=LOG_FORMAT)
    logging.getLogger("sqldispatch").setLevel(level_value)
