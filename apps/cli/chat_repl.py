from __future__ import annotations

import atexit
import sys
from pathlib import Path
from typing import Callable

# Enable readline for arrow keys, history navigation, and line editing.
try:
    import readline
except ImportError:
    readline = None  # type: ignore[assignment]  # Windows fallback

from apps.cli.output import format_speed_report
from llmkit.engine.session import GenerationSession

_HELP = """commands:
  /help    show this help
  /stats   token counts and speed of the last response
  /reset   forget the conversation
  /exit    quit"""

_CHAT_COMMANDS = ["/help", "/stats", "/reset", "/exit"]


def _chat_history_file_path() -> Path:
    return Path.home() / ".config" / "llmkit" / "chat_history"


def _setup_readline() -> None:
    """Persistent input history and tab completion for REPL commands."""
    if readline is None:
        return
    history_file = _chat_history_file_path()
    history_file.parent.mkdir(parents=True, exist_ok=True)
    try:
        readline.read_history_file(history_file)
    except FileNotFoundError:
        pass
    readline.set_history_length(1000)
    atexit.register(readline.write_history_file, history_file)

    def completer(text: str, state: int) -> str | None:
        matches = [cmd for cmd in _CHAT_COMMANDS if cmd.startswith(text)] if text.startswith("/") else []
        return matches[state] if state < len(matches) else None

    readline.set_completer(completer)
    readline.set_completer_delims(" \t\n")
    readline.parse_and_bind("tab: complete")


def make_input_fn(
    session: GenerationSession,
    *,
    read: Callable[[str], str] = input,
    out=sys.stdout,
) -> Callable[[str], str]:
    """Wrap `read` so that display-only commands are handled here and never reach the session."""

    def _read(prompt: str) -> str:
        while True:
            line = read(prompt).strip()
            if line == "/help":
                print(_HELP, file=out)
                continue
            if line == "/stats":
                print(format_speed_report(session.last_response), file=out)
                continue
            return line

    return _read


def chat_repl(session: GenerationSession, *, use_readline: bool = True) -> int:
    if use_readline:
        _setup_readline()
    print(f"model family: {session.family.name}  (type /help for commands)")
    try:
        session.chat(input_fn=make_input_fn(session), output=sys.stdout)
    except KeyboardInterrupt:
        print()
    return 0
