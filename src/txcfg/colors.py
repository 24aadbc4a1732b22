"""
Color utilities for txcfg console output

Provides ANSI color codes for terminal output.
"""

import os
import sys

from .cfg_graph import EdgeKind

# Check if colors are supported
SUPPORTS_COLOR = (
    hasattr(sys.stdout, 'isatty') and sys.stdout.isatty() and
    os.environ.get('TERM') != 'dumb' and
    not os.environ.get('NO_COLOR')
)


class Colors:
    """ANSI color codes for terminal output."""

    RED = '\033[31m'
    GREEN = '\033[32m'
    YELLOW = '\033[33m'
    BLUE = '\033[34m'
    MAGENTA = '\033[35m'
    CYAN = '\033[36m'

    BRIGHT_RED = '\033[91m'
    BRIGHT_GREEN = '\033[92m'
    BRIGHT_YELLOW = '\033[93m'
    BRIGHT_BLUE = '\033[94m'
    BRIGHT_MAGENTA = '\033[95m'
    BRIGHT_CYAN = '\033[96m'
    BRIGHT_WHITE = '\033[97m'

    BOLD = '\033[1m'
    DIM = '\033[2m'

    RESET = '\033[0m'

    @classmethod
    def disable(cls):
        """Disable all colors."""
        for attr in dir(cls):
            if not attr.startswith('_') and attr.isupper():
                setattr(cls, attr, '')


# Disable colors if not supported
if not SUPPORTS_COLOR:
    Colors.disable()


def dim(text: str) -> str:
    """Return text dimmed."""
    return f"{Colors.DIM}{text}{Colors.RESET}"


# Semantic color functions
def error(text: str) -> str:
    """Format error text."""
    return f"{Colors.BRIGHT_RED}{text}{Colors.RESET}"

def success(text: str) -> str:
    """Format success text."""
    return f"{Colors.BRIGHT_GREEN}{text}{Colors.RESET}"

def warning(text: str) -> str:
    """Format warning text."""
    return f"{Colors.BRIGHT_YELLOW}{text}{Colors.RESET}"

def info(text: str) -> str:
    """Format info text."""
    return f"{Colors.BRIGHT_CYAN}{text}{Colors.RESET}"

def address(text: str) -> str:
    """Format Ethereum address."""
    return f"{Colors.BRIGHT_MAGENTA}{text}{Colors.RESET}"

def number(text: str) -> str:
    """Format numbers."""
    return f"{Colors.BRIGHT_YELLOW}{text}{Colors.RESET}"

def edge_kind(kind: EdgeKind) -> str:
    """Format an edge kind in the colour the graphs draw it with."""
    color = {
        EdgeKind.CONDITION_TRUE: Colors.GREEN,
        EdgeKind.CONDITION_FALSE: Colors.RED,
        EdgeKind.SYMBOLIC_JUMP: Colors.YELLOW,
    }.get(kind, Colors.BLUE)
    return f"{color}{kind}{Colors.RESET}"
