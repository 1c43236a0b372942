import logging
import sys
from logging.handlers import RotatingFileHandler

from voicescribe.config import settings


def get_logger(name=__name__):
    logger = logging.getLogger(name)

    # Only add handlers if the logger doesn't have them (prevents duplicate logs)
    if not logger.handlers:
        logger.setLevel(logging.DEBUG)

        common_format = logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        )

        # Console shows the configured level and above
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setLevel(getattr(logging, settings.log.level, logging.INFO))
        console_handler.setFormatter(common_format)
        logger.addHandler(console_handler)

        # File stores everything and rotates
        if settings.log.file:
            file_handler = RotatingFileHandler(
                settings.log.file,
                maxBytes=settings.log.max_bytes,
                backupCount=settings.log.backup_count,
            )
            file_handler.setLevel(logging.DEBUG)
            file_handler.setFormatter(common_format)
            logger.addHandler(file_handler)

        logger.propagate = False

    return logger
