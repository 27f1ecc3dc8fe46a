"""StreamCommandsMixin: START_STREAM, STOP_STREAM."""

import math

from .constants import (
    RESPONSE_BAD_INTERVAL,
    RESPONSE_STREAM_RUNNING,
    RESPONSE_STREAM_STARTED,
    RESPONSE_STREAM_STOPPED,
)


class StreamCommandsMixin:
    """Mixin controlling the synthetic sensor stream."""

    async def handle_start_stream(self, data, peer_id):
        """Start streaming; `START_STREAM:<seconds>` overrides the default interval"""
        interval = None
        if data:
            try:
                interval = float(data.decode("utf-8"))
            except ValueError:
                return RESPONSE_BAD_INTERVAL
            if not (interval > 0 and math.isfinite(interval)):
                return RESPONSE_BAD_INTERVAL

        started = await self.peripheral._start_stream(interval)
        return RESPONSE_STREAM_STARTED if started else RESPONSE_STREAM_RUNNING

    async def handle_stop_stream(self, data, peer_id):
        """Stop streaming (no-op when idle)"""
        await self.peripheral._stop_stream()
        return RESPONSE_STREAM_STOPPED
