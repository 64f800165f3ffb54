"""File logger for mosaic sessions.

Everything of note (backend requests, retries, tool executions,
approvals, snapshot commits) is written to .mosaic_output/mosaic.log in
the workspace so a misbehaving turn can be reconstructed afterwards.

Usage in any module:
    from .logger import get_logger
    log = get_logger("orchestrator")
    log.info("turn started: %s", truncate(text))

Components that accept a ``logger`` argument use it instead, which lets
tests and embedding hosts route output wherever they like.

The log file rotates at 5 MB and keeps the last 5 files.
"""

import logging
import os
import sys
import traceback
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

ROOT_LOGGER = "mosaic"
LOG_DIR_NAME = ".mosaic_output"


def _log_dir_for(workspace: Optional[str]) -> Path:
    base = Path(workspace) if workspace else Path.cwd()
    log_dir = base / LOG_DIR_NAME
    log_dir.mkdir(parents=True, exist_ok=True)
    return log_dir


def init_logging(
    workspace: Optional[str] = None,
    session_id: Optional[str] = None,
    level: int = logging.DEBUG,
) -> logging.Logger:
    """Attach the rotating file handler to the ``mosaic`` logger.

    Safe to call more than once; a second call with the same workspace
    is a no-op, a call with a new workspace moves the file handler.
    """
    root = logging.getLogger(ROOT_LOGGER)
    root.setLevel(level)
    log_path = _log_dir_for(workspace) / "mosaic.log"

    for handler in list(root.handlers):
        if isinstance(handler, RotatingFileHandler):
            if Path(handler.baseFilename) == log_path.resolve():
                return root
            root.removeHandler(handler)
            handler.close()

    handler = RotatingFileHandler(
        str(log_path),
        maxBytes=5 * 1024 * 1024,   # 5 MB per file
        backupCount=5,
        encoding="utf-8",
    )
    handler.setLevel(level)
    fmt = logging.Formatter(
        fmt="%(asctime)s.%(msecs)03d | %(levelname)-5s | %(name)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    handler.setFormatter(fmt)
    root.addHandler(handler)

    # Mirror to stderr while developing
    if os.environ.get("MOSAIC_DEBUG") and not any(
        type(h) is logging.StreamHandler for h in root.handlers
    ):
        stderr_handler = logging.StreamHandler(sys.stderr)
        stderr_handler.setLevel(logging.DEBUG)
        stderr_handler.setFormatter(fmt)
        root.addHandler(stderr_handler)

    root.info(
        "=== Logging initialised === pid=%d python=%s session=%s log=%s",
        os.getpid(),
        sys.version.split()[0],
        session_id or "-",
        log_path,
    )
    return root


def get_logger(name: str) -> logging.Logger:
    """Return a child logger under the ``mosaic`` namespace.

    No handler is installed here; until init_logging() runs, records
    propagate to whatever the host application configured.
    """
    return logging.getLogger(f"{ROOT_LOGGER}.{name}")


# ── Convenience helpers ──────────────────────────────────────

def log_exception(logger: logging.Logger, msg: str, exc: BaseException) -> None:
    """Log an exception with full traceback."""
    tb = traceback.format_exception(type(exc), exc, exc.__traceback__)
    logger.error("%s: %s\n%s", msg, exc, "".join(tb))


def truncate(text: str, max_len: int = 200) -> str:
    """Truncate a string for log readability."""
    if not text:
        return "(empty)"
    text = text.replace("\n", "\\n")
    if len(text) <= max_len:
        return text
    return text[:max_len] + f"...[{len(text)} chars]"
