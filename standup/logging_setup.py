import logging
import os
from datetime import datetime
from logging.handlers import RotatingFileHandler
from typing import List, Optional

_FORMAT = "[%(asctime)s] [%(name)s] %(levelname)s %(message)s"


def _build_stream_handler(level: int) -> logging.StreamHandler:
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter(_FORMAT, "%H:%M:%S"))
    handler.setLevel(level)
    handler.name = "standup_stream"
    return handler


def _build_file_handler(log_path: str) -> RotatingFileHandler:
    handler = RotatingFileHandler(log_path, maxBytes=5_000_000, backupCount=3)
    handler.setFormatter(logging.Formatter(_FORMAT, "%Y-%m-%d %H:%M:%S"))
    handler.setLevel(logging.DEBUG)
    handler.name = "standup_file"
    return handler


def configure_logging(level: int = logging.INFO, log_dir: Optional[str] = None) -> Optional[str]:
    """
    Installs the stream handler (and a rotating file handler when log_dir is set)
    on the root logger. Returns the log file path, if any.
    """
    handlers: List[logging.Handler] = [_build_stream_handler(level)]
    log_path = None
    if log_dir:
        os.makedirs(log_dir, exist_ok=True)
        timestamp = datetime.now().strftime("%Y-%m-%d_%H-%M-%S")
        log_path = os.path.join(log_dir, f"standup_{timestamp}.log")
        handlers.append(_build_file_handler(log_path))

    root = logging.getLogger()
    root.setLevel(logging.DEBUG if log_path else level)
    root.handlers = []
    for handler in handlers:
        root.addHandler(handler)

    # Quiet the chatty HTTP and model-loading libraries
    for name in ("httpx", "openai", "sentence_transformers", "urllib3"):
        logging.getLogger(name).setLevel(logging.WARNING)

    if log_path:
        root.info("Logging initialized: %s", log_path)
    return log_path
