"""DataCommandsMixin: SET_DATA, GET_DATA, RESET."""

from .constants import RESPONSE_NO_DATA, RESPONSE_OK, RESPONSE_RESET


class DataCommandsMixin:
    """Mixin operating on the peripheral's stored payload."""

    async def handle_set_data(self, data, peer_id):
        """Overwrite the stored payload"""
        if not data:
            return RESPONSE_NO_DATA

        self.peripheral.stored_payload = data
        self.logger.info("📝 Stored payload set by %s (%d bytes)", peer_id, len(data))
        return RESPONSE_OK

    async def handle_get_data(self, data, peer_id):
        """Current stored payload (may be empty)"""
        return self.peripheral.stored_payload

    async def handle_reset(self, data, peer_id):
        """Clear the stored payload and counters"""
        self.peripheral.stored_payload = b""
        self.peripheral.message_counter = 0
        self.logger.info("Stored payload and counters reset by %s", peer_id)
        return RESPONSE_RESET
