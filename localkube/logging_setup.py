import logging
import os
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional


def _env(name: str, default: Optional[str] = None) -> Optional[str]:
    v = os.getenv(name)
    if v is None or v.strip() == "":
        return default
    return v.strip()


def setup_logging(service_name: str = "localkube") -> None:
    """
    Configure the root logger once per process.

    - always logs to stderr
    - if LOCALKUBE_LOG_DIR is set, also writes <dir>/app.log, rotated by size
      (LOCALKUBE_LOG_MAX_BYTES, LOCALKUBE_LOG_BACKUP_COUNT)
    """
    root = logging.getLogger()
    level = (_env("LOCALKUBE_LOG_LEVEL", "INFO") or "INFO").upper()
    root.setLevel(getattr(logging, level, logging.INFO))
    if getattr(root, "_localkube_logging_configured", False):
        return

    fmt = logging.Formatter(
        fmt="%(asctime)s %(levelname)s %(name)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    sh = logging.StreamHandler()
    sh.setFormatter(fmt)
    root.addHandler(sh)

    log_dir = _env("LOCALKUBE_LOG_DIR")
    if log_dir:
        Path(log_dir).mkdir(parents=True, exist_ok=True)
        fh = RotatingFileHandler(
            Path(log_dir) / "app.log",
            maxBytes=max(1, int(_env("LOCALKUBE_LOG_MAX_BYTES", str(50 * 1024 * 1024)))),
            backupCount=max(0, int(_env("LOCALKUBE_LOG_BACKUP_COUNT", "10"))),
            encoding="utf-8",
        )
        fh.setFormatter(fmt)
        root.addHandler(fh)

    setattr(root, "_localkube_logging_configured", True)
    logging.getLogger(__name__).info("logging configured: service=%s dir=%s", service_name, log_dir or "-")
