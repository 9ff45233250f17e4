import logging
import os
import sys

_LOG_FMT = "[%(asctime)s] %(message)s"
_DATE_FMT = "%Y-%m-%d %H:%M:%S"


def configure_logging(log_file: str, level: str = "INFO") -> None:
    """
    Send every log record to stdout and append it to ``log_file``.

    The log directory is created when missing.
    """
    os.makedirs(os.path.dirname(os.path.abspath(log_file)), exist_ok=True)
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=_LOG_FMT,
        datefmt=_DATE_FMT,
        handlers=[
            logging.StreamHandler(sys.stdout),
            logging.FileHandler(log_file, mode="a", encoding="utf-8"),
        ],
        force=True,
    )
    logging.getLogger("pika").setLevel(logging.WARNING)
