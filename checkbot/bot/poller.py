"""Long-poll ingestion loop.

The cursor (last_update_id) only moves forward. Each event advances it
before being handed to the dispatcher; a transport error leaves it alone,
sleeps for the backoff and polls again, so nothing is skipped.
"""
import asyncio
import logging

from checkbot.core.errors import CheckbotError, TransportError

log = logging.getLogger(__name__)

OFFSETS = "offsets"


class UpdatePoller:
    def __init__(self, transport, handle, timeout=30, backoff=5, store=None, sleep=asyncio.sleep):
        self.transport = transport
        self.handle = handle
        self.timeout = timeout
        self.backoff = backoff
        self.store = store  # set to persist the cursor across restarts
        self.sleep = sleep
        self.cursor = 0

    def load_cursor(self):
        if self.store is None:
            return self.cursor
        with self.store.acquire(OFFSETS) as h:
            self.cursor = max(self.cursor, int(h.get("last_update_id", 0)))
        log.info(f"Resuming after update {self.cursor}")
        return self.cursor

    def _save_cursor(self):
        if self.store is None:
            return
        try:
            with self.store.acquire(OFFSETS) as h:
                h.set("last_update_id", self.cursor)
                h.save()
        except CheckbotError as e:
            log.warning(f"Could not persist update offset {self.cursor}: {e}")

    async def poll_once(self):
        """One long-poll cycle. Returns the number of events dispatched."""
        offset = self.cursor + 1 if self.cursor else None
        try:
            events = await self.transport.poll(offset, self.timeout)
        except TransportError as e:
            log.error(f"Polling error: {e}")
            await self.sleep(self.backoff)
            return 0

        for event in events:
            self.cursor = max(self.cursor, event.update_id)
            await asyncio.to_thread(self._save_cursor)
            try:
                await self.handle(event)
            except Exception:
                log.exception(f"Unhandled error for update {event.update_id}")
        return len(events)

    async def run(self):
        await asyncio.to_thread(self.load_cursor)
        log.info("Bot started with long polling")
        while True:
            await self.poll_once()
