import sys

from loguru import logger

LOG_FORMAT = (
    '<green>{time:HH:mm:ss.SSS}</green> | <level>{level: <8}</level> | '
    '<cyan>{extra[timer]}</cyan> | {message}'
)


def configure_logging(level: str = 'INFO') -> None:
    """Route loguru output to stderr, tagging every record with its timer id."""
    logger.remove()
    logger.configure(extra={'timer': '-'})
    logger.add(sys.stderr, level=level.upper(), format=LOG_FORMAT)
