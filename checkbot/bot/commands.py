"""Routes each inbound event to one command and sends exactly one reply."""
import asyncio
import logging
import os

from checkbot.core import messages
from checkbot.core.dispatch import results_path
from checkbot.core.errors import CheckbotError, ValidationError
from checkbot.core.numbers import numbers_from_upload
from checkbot.memory.jobs import JobStatus

log = logging.getLogger(__name__)

MARKDOWN = "Markdown"


def blocking(fn, *args, **kwargs):
    """Run a store call off the event loop; lock waits must not stall polling."""
    return asyncio.to_thread(fn, *args, **kwargs)


class CommandDispatcher:
    def __init__(self, transport, registry, sessions, results_dir,
                 max_upload_bytes=None, cancel_on_replace=True, allowed_users=None):
        self.transport = transport
        self.registry = registry
        self.sessions = sessions
        self.results_dir = results_dir
        self.max_upload_bytes = max_upload_bytes
        self.cancel_on_replace = cancel_on_replace
        self.allowed_users = set(allowed_users or ())
        self.commands = {
            "/start": self.send_help,
            "/help": self.send_help,
            "/upload": self.send_upload_instructions,
            "/status": self.send_status,
            "/results": self.send_results,
            "/cancel": self.cancel_job,
        }

    async def __call__(self, event):
        await self.handle(event)

    async def handle(self, event):
        if event.chat_id is None:
            return
        if self.allowed_users and event.user_id not in self.allowed_users:
            log.info(f"Ignoring update {event.update_id} from user {event.user_id}")
            return

        chat_id, user_id = event.chat_id, event.user_id
        try:
            if event.text is not None:
                text = event.text.strip()
                handler = self.commands.get(text)
                log.info(f"user {user_id}: {text[:40]!r}")
                if handler is None:
                    await self.transport.send_text(chat_id, messages.UNKNOWN)
                else:
                    await handler(chat_id, user_id)
            elif event.file_id is not None:
                await self.handle_upload(event)
            else:
                await self.transport.send_text(chat_id, messages.UNKNOWN)
        except ValidationError as e:
            await self.transport.send_text(chat_id, messages.rejected(e))
        except CheckbotError as e:
            log.error(f"Update {event.update_id} from user {user_id} failed: {e}")
            await self.transport.send_text(chat_id, messages.FAILURE)
        except Exception:
            log.exception(f"Update {event.update_id} from user {user_id} crashed")
            await self.transport.send_text(chat_id, messages.FAILURE)

    async def send_help(self, chat_id, user_id):
        await self.transport.send_text(chat_id, messages.HELP)

    async def send_upload_instructions(self, chat_id, user_id):
        await self.transport.send_text(chat_id, messages.UPLOAD, parse_mode=MARKDOWN)

    async def handle_upload(self, event):
        if self.max_upload_bytes and (event.file_size or 0) > self.max_upload_bytes:
            raise ValidationError(f"File too large (limit {self.max_upload_bytes // 1024} KB).")
        content = await self.transport.fetch_file(event.file_id)
        numbers = numbers_from_upload(content, self.max_upload_bytes)

        user_id = event.user_id
        previous = await blocking(self.sessions.get_current_job, user_id)
        job_id = await blocking(self.registry.create_job, user_id, numbers)
        try:
            await blocking(self.sessions.set_current_job, user_id, job_id)
            if self.cancel_on_replace and previous:
                if await blocking(self.registry.update_job, previous, status=JobStatus.CANCELLED):
                    log.info(f"Job {previous} cancelled, replaced by {job_id}")
        except CheckbotError:
            await blocking(self._abandon_upload, user_id, job_id, previous)
            raise

        await self.transport.send_text(event.chat_id, messages.accepted(job_id, len(numbers)), parse_mode=MARKDOWN)

    def _abandon_upload(self, user_id, job_id, previous):
        """Undo a half-finished upload: the new job must not run unreachable."""
        try:
            self.registry.update_job(job_id, status=JobStatus.FAILED, error="upload not completed")
        except CheckbotError as e:
            log.error(f"Could not fail abandoned job {job_id}: {e}")
        try:
            if self.sessions.get_current_job(user_id) == job_id:
                if previous:
                    self.sessions.set_current_job(user_id, previous)
                else:
                    self.sessions.clear_current_job(user_id)
        except CheckbotError as e:
            log.error(f"Could not restore session for user {user_id}: {e}")

    async def send_status(self, chat_id, user_id):
        job = await blocking(self._current_job, user_id)
        if job is None:
            await self.transport.send_text(chat_id, messages.NO_ACTIVE_JOB)
            return
        await self.transport.send_text(chat_id, messages.status(job), parse_mode=MARKDOWN)

    def _current_job(self, user_id):
        return self.registry.get_job(self.sessions.get_current_job(user_id))

    async def send_results(self, chat_id, user_id):
        job_id = await blocking(self.sessions.get_current_job, user_id)
        if not job_id:
            await self.transport.send_text(chat_id, messages.NO_JOB)
            return
        path = results_path(self.results_dir, job_id)
        if not os.path.exists(path):
            await self.transport.send_text(chat_id, messages.RESULTS_NOT_READY)
            return
        await self.transport.send_document(chat_id, path, f"results_{job_id}.json",
                                           caption=messages.results_caption(job_id))

    async def cancel_job(self, chat_id, user_id):
        job_id = await blocking(self.sessions.get_current_job, user_id)
        job = await blocking(self.registry.get_job, job_id)
        if job is None:
            if job_id:
                await blocking(self.sessions.clear_current_job, user_id)
            await self.transport.send_text(chat_id, messages.NOTHING_TO_CANCEL)
            return

        cancelled = await blocking(self.registry.update_job, job_id, status=JobStatus.CANCELLED)
        await blocking(self.sessions.clear_current_job, user_id)
        if cancelled:
            log.info(f"Job {job_id} cancelled by user {user_id}")
            await self.transport.send_text(chat_id, messages.CANCELLED)
        else:
            await self.transport.send_text(chat_id, messages.already_finished(job.status.value))
