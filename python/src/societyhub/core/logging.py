"""Logging setup shared by the bootstrap and scripts."""

import logging

from .config import Settings

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def configure_logging(config: Settings) -> None:
    """
    Configure root logging once.
    
    Repeated calls are ignored so tests and embedding applications that
    already installed handlers keep their own configuration.
    """
    root = logging.getLogger()
    if root.handlers:
        return
    
    logging.basicConfig(
        level=getattr(logging, config.LOG_LEVEL.upper(), logging.INFO),
        format=LOG_FORMAT,
    )
    
    # Keep transport chatter out of the application log
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("transitions").setLevel(logging.WARNING)
