import logging
from pathlib import Path
from typing import Optional

from rich.logging import RichHandler


def setup_logging(
    output_dir: Path,
    debug: bool = False,
    log_path: Optional[Path] = None,
    console: bool = False,
) -> logging.Logger:
    """
    Setup logging configuration for the ingestion service.

    Creates the data directory and mip.log inside it.
    Returns configured logger instance.

    Args:
        output_dir: Data directory (database, verification records, log)
        debug: If True, enable DEBUG level logging
        log_path: Optional path to log file (overrides output_dir)
        console: If True, also log to the terminal through rich
    """
    output_dir.mkdir(parents=True, exist_ok=True)

    log_file = Path(log_path) if log_path else (output_dir / "mip.log")
    log_file.parent.mkdir(parents=True, exist_ok=True)

    level = logging.DEBUG if debug else logging.INFO

    file_handler = logging.FileHandler(log_file)
    file_handler.setFormatter(logging.Formatter('%(asctime)s - %(levelname)s - %(message)s'))
    handlers = [file_handler]
    if console:
        # RichHandler renders its own time and level columns
        handlers.append(RichHandler(rich_tracebacks=True, show_path=False))

    logging.basicConfig(
        level=level,
        format='%(message)s',
        handlers=handlers,
        force=True
    )

    logger = logging.getLogger(__name__)
    logger.info(f"Logging initialized: {log_file} (debug={'ON' if debug else 'OFF'})")

    return logger
