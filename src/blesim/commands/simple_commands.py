"""SimpleCommandsMixin: PING, ECHO, GET_INFO."""

import json
import time

from .constants import RESPONSE_PONG


class SimpleCommandsMixin:
    """Mixin providing stateless command handlers."""

    async def handle_ping(self, data, peer_id):
        """Liveness check"""
        return RESPONSE_PONG

    async def handle_echo(self, data, peer_id):
        """Return the data segment unchanged"""
        return data or b""

    async def handle_get_info(self, data, peer_id):
        """Describe the simulated device and its current sessions"""
        sessions = self.peripheral.sessions
        info = {
            "device": self.peripheral.device_name,
            "version": self.protocol_version,
            "connected": sessions.connected_count,
            "subscribed": sessions.subscribed_count,
            "timestamp": time.time(),
        }
        return json.dumps(info).encode("utf-8")
