import sys
from typing import Dict, Optional, TextIO

import structlog

from .demos import MENU_OPTIONS, Demo
from .settings import Settings

logger = structlog.get_logger(__name__)

EXIT_OPTION = "0"
HOLD_SENTINEL = "exit"


def _readline(stdin: TextIO) -> Optional[str]:
    line = stdin.readline()
    if line == "":
        return None
    return line.rstrip("\r\n")


def run_menu(
    stdin: Optional[TextIO] = None,
    stdout: Optional[TextIO] = None,
    options: Optional[Dict[str, Demo]] = None,
    config: Optional[Settings] = None,
) -> int:
    """Interactive loop: pick a demonstration by number, "0" to quit.

    Parameters
    ----------
    stdin, stdout : TextIO
        Streams to talk to; the real console by default.
    options : Optional[Dict[str, Demo]]
        Menu key to demonstration. Defaults to `MENU_OPTIONS` ("1".."6").
    config : Optional[Settings]
        Settings forwarded to each demonstration.

    Returns
    -------
    int
        Process exit code, always 0. The loop also ends at end of input.

    Notes
    -----
    - Choices are matched exactly, case-sensitively; only the trailing newline
      is stripped. Anything else prints "Invalid option, please try again".
    """

    stdin = stdin or sys.stdin
    stdout = stdout or sys.stdout
    options = MENU_OPTIONS if options is None else options

    def emit(line: str = "") -> None:
        stdout.write(line + "\n")
        stdout.flush()

    emit("Memory Leak Examples in Python")
    emit("==============================")
    while True:
        emit()
        emit("Choose an example to run:")
        for key, demo in options.items():
            emit(f"{key}. {demo.title}")
        emit(f"{EXIT_OPTION}. Exit")

        choice = _readline(stdin)
        if choice is None or choice == EXIT_OPTION:
            break
        demo = options.get(choice)
        if demo is None:
            emit("Invalid option, please try again")
        else:
            emit()
            logger.debug("menu_selected", option=choice, demo=demo.name)
            demo.run(emit=emit, config=config)

        emit()
        emit("Press Enter to continue...")
        if _readline(stdin) is None:
            break
    return 0


def hold(stdin: Optional[TextIO] = None, stdout: Optional[TextIO] = None) -> int:
    """Keep the process alive (e.g. to attach a memory profiler) until a line reads "exit"."""

    stdin = stdin or sys.stdin
    stdout = stdout or sys.stdout
    stdout.write(f'Process held for inspection, type "{HOLD_SENTINEL}" to quit\n')
    stdout.flush()
    while True:
        line = _readline(stdin)
        if line is None or line == HOLD_SENTINEL:
            return 0
