"""
Logging configuration for recall.

Keeps HTTP client chatter out of the terminal by default.
"""

import logging
import sys
import warnings
from logging.handlers import RotatingFileHandler
from pathlib import Path


def configure_quiet_mode(quiet: bool = True):
    """
    Configure logging to suppress verbose library output.

    Args:
        quiet: If True, suppress verbose output. If False, show everything.
    """
    if quiet:
        warnings.filterwarnings("ignore")
        logging.getLogger("urllib3").setLevel(logging.ERROR)
        logging.getLogger("requests").setLevel(logging.ERROR)
    else:
        warnings.filterwarnings("default")
        logging.getLogger("urllib3").setLevel(logging.NOTSET)
        logging.getLogger("requests").setLevel(logging.NOTSET)


def enable_debug_mode():
    """Enable debug-level logging to stderr."""
    warnings.filterwarnings("default")

    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)

    if not any(isinstance(h, logging.StreamHandler) and getattr(h, "stream", None) == sys.stderr
               for h in root_logger.handlers):
        handler = logging.StreamHandler(sys.stderr)
        handler.setLevel(logging.DEBUG)
        handler.setFormatter(logging.Formatter(
            "%(asctime)s %(levelname)s %(name)s: %(message)s",
            datefmt="%H:%M:%S"
        ))
        root_logger.addHandler(handler)

    for name in ("recall", "urllib3"):
        logging.getLogger(name).setLevel(logging.DEBUG)


def configure_ops_log(store_path):
    """Configure a persistent operations log for a recall store.

    Writes to {store_path}/recall-ops.log using a rotating file handler
    (1MB max, 3 backups). Always active regardless of --verbose.
    Returns the handler so it can be removed on close().
    """
    path = Path(store_path)
    path.mkdir(parents=True, exist_ok=True)
    handler = RotatingFileHandler(
        str(path / "recall-ops.log"),
        maxBytes=1_000_000,
        backupCount=3,
    )
    handler.setLevel(logging.INFO)
    handler.setFormatter(logging.Formatter(
        "%(asctime)s %(levelname)s %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    ))

    recall_logger = logging.getLogger("recall")
    recall_logger.addHandler(handler)
    # Let INFO through even in quiet mode
    if recall_logger.level == logging.NOTSET or recall_logger.level > logging.INFO:
        recall_logger.setLevel(logging.INFO)

    return handler


def remove_ops_log(handler) -> None:
    """Detach and close a handler returned by configure_ops_log()."""
    if handler is None:
        return
    logging.getLogger("recall").removeHandler(handler)
    handler.close()


def summarize_payload(payload: dict) -> dict:
    """Shrink a provider request body for logging.

    Embedding inputs and vectors are replaced with count/dim summaries.
    """
    out = {}
    for key, value in payload.items():
        if key == "input" and isinstance(value, list):
            out[key] = f"<{len(value)} texts>"
        elif key == "embeddings" and isinstance(value, list):
            dim = len(value[0]) if value and isinstance(value[0], list) else 0
            out[key] = f"<{len(value)} x {dim}>"
        elif key == "messages" and isinstance(value, list):
            out[key] = f"<{len(value)} messages>"
        else:
            out[key] = value
    return out
