"""Rich console log stream shared by the operator and the unseal worker.

Every message goes to stderr as one timestamped line, so container logs of
the operator and of the sidecar read the same way. The helpers only differ
in the marker printed before the message.

Nothing in this module redacts values: callers must never pass key
shares, tokens or private keys to these functions.
"""

from rich.console import Console
from rich.theme import Theme

_THEME = Theme(
    {
        "info": "cyan",
        "success": "green",
        "warning": "yellow",
        "error": "red bold",
        "highlight": "cyan bold",
        "muted": "dim",
    }
)

console = Console(theme=_THEME, stderr=True, log_path=False)


def _log(style: str, marker: str, message: str) -> None:
    console.log(f"[{style}]{marker}[/{style}] {message}")


def info(message: str) -> None:
    """Log an informational message."""
    _log("info", "ℹ", message)


def success(message: str) -> None:
    """Log a completed operation."""
    _log("success", "✓", message)


def warning(message: str) -> None:
    """Log a condition that needs attention but does not stop the process."""
    _log("warning", "⚠", message)


def error(message: str) -> None:
    """Log a failure."""
    _log("error", "✗", message)


def action(message: str) -> None:
    """Log the start of a reconcile pass, attempt or other unit of work."""
    _log("info", "→", message)


def step(message: str) -> None:
    """Log one step inside the current unit of work."""
    _log("muted", "•", message)


def highlight(text: str) -> str:
    """Return ``text`` wrapped in highlight markup.

    Args:
        text: Object name, key name or other identifier to emphasize.

    Returns:
        Text wrapped in Rich markup for highlighting.

    """
    return f"[highlight]{text}[/highlight]"
