"""Shared Rich consoles and logging setup."""
import logging

from rich.console import Console
from rich.logging import RichHandler

# Progress output; silenced by --quiet
console = Console()
# Warnings and errors; always shown
err_console = Console(stderr=True)


def configure(quiet: bool = False, debug: bool = False) -> None:
    """Apply --quiet/--debug to the consoles and the logging tree."""
    console.quiet = quiet
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.WARNING,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=err_console, show_path=debug, markup=False)],
        force=True,
    )
    logging.getLogger("azure").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)


def warn(message: str) -> None:
    err_console.print(f"[yellow]Warning: {message}[/yellow]")
