"""
Logging configuration
"""
from loguru import logger
import sys
from storefront.core.config import settings


def setup_logger():
    """Configure the stdout sink at the configured level"""
    logger.remove()  # Remove default handler

    logger.add(
        sys.stdout,
        colorize=True,
        format="<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | <cyan>{name}</cyan>:<cyan>{function}</cyan> - <level>{message}</level>",
        level=settings.LOG_LEVEL,
    )

    return logger
