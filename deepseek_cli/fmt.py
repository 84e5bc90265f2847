"""ANSI-formatted stderr output using Rich."""

from rich.console import Console
from rich.markup import escape
from rich.text import Text

_console = Console(stderr=True)


def init(*, color: bool = False, no_color: bool = False) -> None:
    """Reconfigure the module-level console from CLI flags.

    Call once at startup, before any output.
    """
    global _console
    kwargs: dict = {"stderr": True}
    if color:
        kwargs["force_terminal"] = True
        kwargs["no_color"] = False
    if no_color:
        kwargs["no_color"] = True
    _console = Console(**kwargs)


# -- Banners -----------------------------------------------------------------


def banner(title: str, hints: list[str]) -> None:
    _console.print(Text(title, style="bold cyan"))
    for hint in hints:
        _console.print(Text(hint, style="dim"))
    _console.print()


def llm_spinner(label: str = "Thinking"):
    """Return a Rich Status context manager that spins on stderr."""
    return _console.status(f"  {label}", spinner="dots")


def completion(rounds: int, outcome: str) -> None:
    if outcome == "final_answer":
        _console.print(Text(f"  ✓ Done: {rounds} rounds", style="bold green"))
    else:
        _console.print(
            Text(f"  Stopped: {rounds} rounds, outcome={outcome}", style="bold red")
        )


# -- Tool calls --------------------------------------------------------------


def tool_call(name: str, args_json: str) -> None:
    line = Text()
    line.append("  → Calling ", style="dim")
    line.append(name, style="bold yellow")
    if args_json:
        line.append(f" with args: {args_json}", style="dim")
    _console.print(line)


def tool_result(name: str, elapsed: float, preview: str) -> None:
    header = Text()
    header.append(f"  ← {name}", style="green")
    header.append(f"  {elapsed:.1f}s", style="green")
    _console.print(header)
    if preview:
        for line in preview.splitlines()[:20]:
            _console.print(Text(f"    {line}", style="dim"))


def tool_error(name: str, msg: str) -> None:
    header = Text()
    header.append(f"  ✗ {name}", style="bold red")
    header.append(f"  {msg}", style="red")
    _console.print(header)


# -- MCP ---------------------------------------------------------------------


def mcp_server_start(name: str, tool_count: int) -> None:
    _console.print(
        Text(f"  MCP server {name!r} connected ({tool_count} tools)", style="dim")
    )


def mcp_server_error(name: str, msg: str) -> None:
    line = Text()
    line.append(f"  ⚠ MCP server {name!r}: ", style="yellow")
    line.append(msg, style="yellow")
    _console.print(line)


# -- Diagnostics -------------------------------------------------------------


def info(msg: str) -> None:
    _console.print(Text(f"  {msg}", style="dim"))


def success(msg: str) -> None:
    _console.print(Text(msg, style="green"))


def listing(items: list[str], limit: int = 50) -> None:
    for i, item in enumerate(items[:limit], start=1):
        _console.print(f"{i:>2}. {escape(item)}", highlight=False)
    if len(items) > limit:
        _console.print(Text(f"... {len(items) - limit} more", style="dim"))


def warning(msg: str) -> None:
    line = Text()
    line.append("  ⚠ Warning: ", style="yellow")
    line.append(msg, style="yellow")
    _console.print(line)


def error(msg: str) -> None:
    line = Text()
    line.append("Error: ", style="bold red")
    line.append(msg, style="red")
    _console.print(line)
