"""
Logging setup
"""
import logging
import os

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def setup_logging(level: str = "INFO", log_file: str = "") -> None:
    """Configure root logging once: console, plus a file when log_file is set"""
    handlers = [logging.StreamHandler()]
    if log_file:
        directory = os.path.dirname(log_file)
        if directory:
            os.makedirs(directory, exist_ok=True)
        handlers.append(logging.FileHandler(log_file))

    logging.basicConfig(level=level.upper(), format=LOG_FORMAT, handlers=handlers)
