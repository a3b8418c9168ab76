from __future__ import annotations
import logging

from rich.console import Console
from rich.logging import RichHandler

# third-party loggers that are noise below WARNING
_NOISY_LOGGERS = ("httpx", "httpcore")


def configure_logging(level: str = "INFO", console: Console | None = None) -> None:
    """Route stdlib logging through rich; safe to call more than once."""
    root = logging.getLogger()
    for h in list(root.handlers):
        root.removeHandler(h)
    handler = RichHandler(console=console or Console(stderr=True), show_path=False,
                          rich_tracebacks=True, markup=False)
    handler.setFormatter(logging.Formatter("%(message)s", datefmt="[%X]"))
    root.addHandler(handler)
    root.setLevel(level.upper())
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
