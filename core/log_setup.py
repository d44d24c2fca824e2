"""Console logging setup for the CLI. Library modules only call logging.getLogger."""
import logging

from rich.console import Console
from rich.logging import RichHandler


def configure_logging(level: str = "INFO", console: Console | None = None) -> None:
    root = logging.getLogger()
    for handler in list(root.handlers):
        if isinstance(handler, RichHandler):
            root.removeHandler(handler)

    root.addHandler(RichHandler(
        console=console or Console(stderr=True),
        show_path=False,
        rich_tracebacks=True,
    ))
    root.setLevel(level.upper())
