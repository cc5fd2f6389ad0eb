from .comparison import command_diff
from .inspection import SORT_KEYS, command_check, command_inspect, command_snapshot, command_suggest

__all__ = [
    "SORT_KEYS",
    "command_check",
    "command_diff",
    "command_inspect",
    "command_snapshot",
    "command_suggest",
]
