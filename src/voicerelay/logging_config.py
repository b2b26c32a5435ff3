import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path


def setup_logging(name: str, filename: str, level: str = "INFO", log_dir: Path = Path("logs")) -> logging.Logger:
    """Configure and return the named logger (console plus rotating file). Idempotent."""
    log_dir.mkdir(parents=True, exist_ok=True)

    logger = logging.getLogger(name)
    if logger.handlers:
        return logger

    logger.setLevel(level)
    fmt = logging.Formatter("%(asctime)s %(levelname)s %(name)s - %(message)s")

    ch = logging.StreamHandler()
    ch.setFormatter(fmt)
    logger.addHandler(ch)

    fh = RotatingFileHandler(log_dir / filename, maxBytes=5_000_000, backupCount=3)
    fh.setFormatter(fmt)
    logger.addHandler(fh)

    return logger
