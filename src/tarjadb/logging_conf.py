import logging
import sys

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def resolve_level(level) -> int:
    """Map ``"debug"``, ``"WARNING"``, ``10``... to a logging level; unknown names mean INFO."""
    if isinstance(level, int):
        return level
    numeric_level = getattr(logging, str(level or "INFO").strip().upper(), None)
    if not isinstance(numeric_level, int):
        print(f"Invalid log level: {level}, defaulting to INFO", file=sys.stderr)
        return logging.INFO
    return numeric_level


def configure_logging(level="INFO", *, stream=None) -> None:
    """Configures the root logger for the CLI.

    One handler on ``stream`` (stdout by default), e.g.
    "2025-03-14 10:00:00 [INFO] tarjadb.importer.tables: Embalaje.csv: insertados=2, ..."
    """
    handler = logging.StreamHandler(stream if stream is not None else sys.stdout)
    handler.setFormatter(logging.Formatter(fmt=LOG_FORMAT, datefmt=DATE_FORMAT))

    root_logger = logging.getLogger()
    root_logger.setLevel(resolve_level(level))

    # main() may run more than once per process (tests, run_import.py)
    if root_logger.hasHandlers():
        root_logger.handlers.clear()
    root_logger.addHandler(handler)

    # pandas/numexpr chatter at import time
    logging.getLogger("numexpr").setLevel(logging.WARNING)
