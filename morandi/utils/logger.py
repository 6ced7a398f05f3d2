import logging
import os
import sys


def _build_logger() -> logging.Logger:
    log = logging.getLogger("morandi")
    if log.handlers:
        return log

    level_name = (os.getenv("LOG_LEVEL") or "INFO").strip().upper()
    log.setLevel(getattr(logging, level_name, logging.INFO))

    formatter = logging.Formatter(
        "[%(asctime)s] [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    stream_handler = logging.StreamHandler(sys.stdout)
    stream_handler.setFormatter(formatter)
    log.addHandler(stream_handler)

    log_file = (os.getenv("LOG_FILE") or "").strip()
    if log_file:
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setFormatter(formatter)
        log.addHandler(file_handler)

    log.propagate = False
    return log


logger = _build_logger()
