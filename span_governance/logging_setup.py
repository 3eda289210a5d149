import logging
import os
from logging.handlers import TimedRotatingFileHandler

from .config import get_settings

FORMAT = '[%(asctime)s] %(levelname)s %(name)s: %(message)s'

logger = logging.getLogger("span_governance")

file_handler = None


def setup_logging(level=None, log_dir=None):
    """Configure the root logger once per process.

    A daily rotating file handler is added only when a log directory is
    configured; otherwise logs go to the stream handler alone.
    """
    global file_handler
    cfg = get_settings()
    level = level or cfg.LOG_LEVEL
    log_dir = log_dir if log_dir is not None else cfg.LOG_DIR

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    formatter = logging.Formatter(FORMAT)
    if file_handler:
        file_handler.close()
        file_handler = None
    handlers = []
    if log_dir:
        os.makedirs(log_dir, exist_ok=True)
        log_file = os.path.join(log_dir, 'span_governance.log')
        # Daily rotation, keep 14 days
        file_handler = TimedRotatingFileHandler(log_file, when="midnight", interval=1, backupCount=14)
        file_handler.setFormatter(formatter)
        handlers.append(file_handler)
    stream_handler = logging.StreamHandler()
    stream_handler.setFormatter(formatter)
    handlers.append(stream_handler)
    root_logger.handlers = handlers
    root_logger.info("[BOOT] Logging initialized (level=%s, dir=%s)", level, log_dir or "-")


def close_logging():
    global file_handler
    if file_handler:
        file_handler.close()
        file_handler = None
