"""
Wire format of the command protocol.

A command is UTF-8 text, either `COMMAND` or `COMMAND:data`. The text is
split on the FIRST colon only, so the data segment is passed through
verbatim even when it contains colons itself (`SET_DATA:a:b` stores `a:b`).
There is no escaping. `COMMAND:` carries an empty data segment, which
commands requiring data treat like a missing one.
"""

from dataclasses import dataclass

from .constants import COMMAND_SEPARATOR, Command


@dataclass(frozen=True)
class ParsedCommand:
    name: str                  # upper-cased command word as received
    data: bytes | None = None  # None when no separator was present

    @property
    def command(self) -> Command | None:
        try:
            return Command(self.name)
        except ValueError:
            return None


def decode_payload(payload: bytes) -> str | None:
    """Text of a written payload, or None when it is not valid UTF-8 (binary passthrough)."""
    try:
        return payload.decode("utf-8")
    except UnicodeDecodeError:
        return None


def parse_command(text: str) -> ParsedCommand:
    """Split `COMMAND[:data]` on the first colon."""
    name, sep, data = text.partition(COMMAND_SEPARATOR)
    return ParsedCommand(
        name=name.strip().upper(),
        data=data.encode("utf-8") if sep else None,
    )
