"""Commands sub-package for the peripheral's text command protocol."""

from .handler import COMMANDS, CommandInterpreter, create_command_interpreter
from .parsing import ParsedCommand, decode_payload, parse_command

__all__ = [
    "COMMANDS",
    "CommandInterpreter",
    "ParsedCommand",
    "create_command_interpreter",
    "decode_payload",
    "parse_command",
]
