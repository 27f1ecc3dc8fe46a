from enum import Enum


class Command(Enum):
    """Canonical command names (matched case-insensitively on the wire)"""
    PING = "PING"
    ECHO = "ECHO"
    GET_INFO = "GET_INFO"
    SET_DATA = "SET_DATA"
    GET_DATA = "GET_DATA"
    START_STREAM = "START_STREAM"
    STOP_STREAM = "STOP_STREAM"
    RESET = "RESET"


# Separator between command and data; only the first occurrence splits
COMMAND_SEPARATOR = ":"

# Literal responses
RESPONSE_PONG = b"PONG"
RESPONSE_OK = b"OK"
RESPONSE_UNKNOWN = b"Unknown command"
RESPONSE_NO_DATA = b"ERROR: No data"
RESPONSE_BAD_INTERVAL = b"ERROR: Invalid interval"
RESPONSE_STREAM_STARTED = b"Stream started"
RESPONSE_STREAM_RUNNING = b"Stream already running"
RESPONSE_STREAM_STOPPED = b"Stream stopped"
RESPONSE_RESET = b"Reset complete"
