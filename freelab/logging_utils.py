"""Console logging for the step engine.

Each line is tagged by the kind of work that produced it, so an operator can
tell deterministic pipeline work (validation, clamping, metering) apart from
generative backend calls and rejections at a glance. Tags are readable without
color; ANSI colors are added unless FREELAB_NO_COLOR or NO_COLOR is set.
Rejections go to stderr, everything else to stdout.
"""

import os
import sys
from enum import Enum
from typing import TextIO


class Color(Enum):
    """ANSI escape sequences."""

    BLUE = "\033[94m"
    YELLOW = "\033[93m"
    RED = "\033[91m"
    GREEN = "\033[92m"
    CYAN = "\033[96m"
    BOLD = "\033[1m"
    RESET = "\033[0m"


LOG_TAG_DETERMINISTIC = "[•]"
LOG_TAG_LLM = "[AI]"
LOG_TAG_ERROR = "[!]"
LOG_TAG_SUCCESS = "[✓]"
LOG_TAG_INFO = "[i]"


class Channel(Enum):
    """Tag and color for one kind of log line."""

    DETERMINISTIC = (LOG_TAG_DETERMINISTIC, Color.BLUE)
    LLM = (LOG_TAG_LLM, Color.YELLOW)
    ERROR = (LOG_TAG_ERROR, Color.RED)
    SUCCESS = (LOG_TAG_SUCCESS, Color.GREEN)
    INFO = (LOG_TAG_INFO, Color.CYAN)

    @property
    def tag(self) -> str:
        return self.value[0]

    @property
    def color(self) -> Color:
        return self.value[1]


def colors_enabled() -> bool:
    return not (os.getenv("FREELAB_NO_COLOR") or os.getenv("NO_COLOR"))


def colored(text: str, color: Color, bold: bool = False) -> str:
    """Wrap ``text`` in ANSI codes, or return it unchanged when colors are off."""
    if not colors_enabled():
        return text
    prefix = (Color.BOLD.value if bold else "") + color.value
    return f"{prefix}{text}{Color.RESET.value}"


def emit(channel: Channel, message: str, *, stream: TextIO | None = None) -> None:
    """Print one tagged line on ``channel``."""
    if stream is None:
        stream = sys.stderr if channel is Channel.ERROR else sys.stdout
    print(colored(f"{channel.tag} {message}", channel.color), file=stream, flush=True)


def log_deterministic(message: str) -> None:
    emit(Channel.DETERMINISTIC, message)


def log_llm(message: str) -> None:
    emit(Channel.LLM, message)


def log_error(message: str) -> None:
    emit(Channel.ERROR, message)


def log_success(message: str) -> None:
    emit(Channel.SUCCESS, message)


def log_info(message: str) -> None:
    emit(Channel.INFO, message)
