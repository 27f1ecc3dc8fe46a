"""CommandInterpreter assembly and COMMANDS registry."""

from ..config_loader import PROTOCOL_VERSION
from ..logging_setup import get_logger
from .constants import RESPONSE_UNKNOWN, Command
from .data_commands import DataCommandsMixin
from .parsing import ParsedCommand, parse_command
from .simple_commands import SimpleCommandsMixin
from .stream_commands import StreamCommandsMixin

# Command registry with handler functions and metadata
COMMANDS = {
    Command.PING: {
        "handler": "handle_ping",
        "format": "PING",
        "description": "Liveness check, answers PONG",
    },
    Command.ECHO: {
        "handler": "handle_echo",
        "format": "ECHO:data",
        "description": "Send the data segment back",
    },
    Command.GET_INFO: {
        "handler": "handle_get_info",
        "format": "GET_INFO",
        "description": "Device name, protocol version, peer counts, time",
    },
    Command.SET_DATA: {
        "handler": "handle_set_data",
        "format": "SET_DATA:data",
        "description": "Overwrite the stored payload",
    },
    Command.GET_DATA: {
        "handler": "handle_get_data",
        "format": "GET_DATA",
        "description": "Return the stored payload",
    },
    Command.START_STREAM: {
        "handler": "handle_start_stream",
        "format": "START_STREAM[:seconds]",
        "description": "Start the synthetic sensor stream",
    },
    Command.STOP_STREAM: {
        "handler": "handle_stop_stream",
        "format": "STOP_STREAM",
        "description": "Stop the synthetic sensor stream",
    },
    Command.RESET: {
        "handler": "handle_reset",
        "format": "RESET",
        "description": "Clear the stored payload and counters",
    },
}


class CommandInterpreter(
    SimpleCommandsMixin,
    DataCommandsMixin,
    StreamCommandsMixin,
):
    """
    Executes text commands against a peripheral session.

    Runs inside the session's serialization point: handlers touch the
    peripheral's state directly and must not take the session lock.
    """

    def __init__(self, peripheral, protocol_version: str = PROTOCOL_VERSION):
        self.peripheral = peripheral
        self.protocol_version = protocol_version
        self.logger = get_logger(__name__)
        self.logger.debug("CommandInterpreter: %d commands registered", len(COMMANDS))

    async def execute(self, text: str, peer_id: str | None = None) -> bytes:
        """
        Run one command and return the response payload.

        Unknown commands are answered with a literal response, never an error.
        """
        return await self.execute_parsed(parse_command(text), peer_id)

    async def execute_parsed(self, parsed: ParsedCommand, peer_id: str | None = None) -> bytes:
        command = parsed.command
        if command is None:
            self.logger.info("Unknown command '%s' from %s", parsed.name[:32], peer_id)
            return RESPONSE_UNKNOWN

        handler = getattr(self, COMMANDS[command]["handler"])
        self.logger.debug("Executing %s for %s", command.value, peer_id)
        return await handler(parsed.data, peer_id)


def create_command_interpreter(peripheral, protocol_version: str = PROTOCOL_VERSION):
    """Factory function to create a CommandInterpreter bound to `peripheral`"""
    return CommandInterpreter(peripheral, protocol_version)
