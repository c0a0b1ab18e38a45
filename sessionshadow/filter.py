"""
Command Filter - Determines which captured commands are noise
"""

from dataclasses import dataclass
from typing import Optional, Set


@dataclass
class CommandFilter:
    """
    Decides whether a captured command line is worth keeping.

    The shell hooks record everything the user types; this drops the lines
    that carry no information about the work being documented.
    """

    # Base commands never recorded (first word, case-insensitive)
    IGNORE_COMMANDS: Optional[Set[str]] = None

    # Commands shorter than this are treated as typos
    MIN_LENGTH: int = 2

    # The tool's own invocations are not part of the session
    SELF_COMMANDS: Optional[Set[str]] = None

    # Prefixes of text that is not a command at all
    NON_COMMAND_PREFIXES: tuple = ('#', '//', '|', '}', ')')

    def __post_init__(self):
        if self.IGNORE_COMMANDS is None:
            self.IGNORE_COMMANDS = set()
        self.IGNORE_COMMANDS = {c.lower() for c in self.IGNORE_COMMANDS}

        if self.SELF_COMMANDS is None:
            self.SELF_COMMANDS = {'shadow'}

    @classmethod
    def from_config(cls, config) -> "CommandFilter":
        return cls(
            IGNORE_COMMANDS=set(config.ignore_commands),
            MIN_LENGTH=config.min_command_length,
        )

    def should_ignore(self, command: str) -> bool:
        """Return True if the command should not be recorded."""
        command = command.strip()

        if len(command) < self.MIN_LENGTH:
            return True

        if command.startswith(self.NON_COMMAND_PREFIXES):
            return True

        base_cmd = command.split()[0].lower()

        if base_cmd in self.SELF_COMMANDS:
            return True

        if base_cmd in self.IGNORE_COMMANDS:
            return True

        return False

    def is_significant(self, command: str) -> bool:
        return not self.should_ignore(command)
