"""Command dispatcher end-to-end over a fake transport and a real store."""
import asyncio
import errno
import time

import pytest

from checkbot.bot.commands import CommandDispatcher
from checkbot.bot.transport import Event
from checkbot.core import messages
from checkbot.core.dispatch import results_path
from checkbot.core.errors import LockTimeout
from checkbot.memory.jobs import JobStatus, Outcome
from checkbot.memory import store as store_module
from checkbot.memory.store import write_json_atomic

USER, CHAT = 100, 200
UPLOAD = b"12345678901\nnot-a-number\n12345678901\n+19876543210\n"


@pytest.fixture
def dispatcher(transport, registry, sessions, results_dir):
    transport.files = {"good": UPLOAD, "junk": b"hello\nworld\n"}
    return CommandDispatcher(transport, registry, sessions, results_dir, max_upload_bytes=1024)


def text(update_id, body, user=USER):
    return Event(update_id=update_id, user_id=user, chat_id=CHAT, text=body)


def document(update_id, file_id, size=None, user=USER):
    return Event(update_id=update_id, user_id=user, chat_id=CHAT, file_id=file_id,
                 file_name="numbers.txt", file_size=size)


@pytest.mark.asyncio
@pytest.mark.parametrize("command", ["/start", "/help", " /help "])
async def test_help(dispatcher, transport, command):
    await dispatcher.handle(text(1, command))
    assert transport.sent == [(CHAT, messages.HELP)]


@pytest.mark.asyncio
async def test_upload_instructions(dispatcher, transport):
    await dispatcher.handle(text(1, "/upload"))
    assert transport.last_text == messages.UPLOAD


@pytest.mark.asyncio
@pytest.mark.parametrize("body", ["hello", "/stat", "/status now", ""])
async def test_unknown_command(dispatcher, transport, body):
    await dispatcher.handle(text(1, body))
    assert transport.sent == [(CHAT, messages.UNKNOWN)]


@pytest.mark.asyncio
async def test_message_without_text_or_file_is_unknown(dispatcher, transport):
    await dispatcher.handle(Event(update_id=1, user_id=USER, chat_id=CHAT))
    assert transport.last_text == messages.UNKNOWN


@pytest.mark.asyncio
async def test_update_without_message_is_ignored(dispatcher, transport):
    await dispatcher.handle(Event(update_id=1))
    assert transport.sent == []


@pytest.mark.asyncio
async def test_status_without_session(dispatcher, transport):
    await dispatcher.handle(text(1, "/status"))
    assert transport.sent == [(CHAT, messages.NO_ACTIVE_JOB)]


@pytest.mark.asyncio
async def test_upload_creates_job_and_session(dispatcher, transport, registry, sessions):
    await dispatcher.handle(document(1, "good"))

    job_id = sessions.get_current_job(USER)
    job = registry.get_job(job_id)
    assert job.numbers == ["12345678901", "+19876543210"]
    assert job.total == 2
    assert job.owner == str(USER)
    assert transport.last_text == messages.accepted(job_id, 2)

    await dispatcher.handle(text(2, "/status"))
    reply = transport.last_text
    assert f"`{job_id}`" in reply
    assert "Status: *queued*" in reply
    assert "Progress: 0/2 (0.0%)" in reply or "Progress: 0/2 (0%)" in reply


@pytest.mark.asyncio
async def test_upload_without_valid_numbers_changes_nothing(dispatcher, transport, registry, sessions):
    await dispatcher.handle(document(1, "junk"))

    assert registry.list_jobs() == []
    assert sessions.get_current_job(USER) is None
    assert transport.last_text.startswith("❌")
    assert "No valid phone numbers" in transport.last_text


@pytest.mark.asyncio
async def test_oversized_upload_rejected_before_download(dispatcher, transport, registry):
    await dispatcher.handle(document(1, "missing-file", size=10_000))

    assert registry.list_jobs() == []
    assert "too large" in transport.last_text


@pytest.mark.asyncio
async def test_download_failure_reports_generic_failure(dispatcher, transport, registry):
    await dispatcher.handle(document(1, "missing-file"))

    assert registry.list_jobs() == []
    assert transport.last_text == messages.FAILURE


@pytest.mark.asyncio
async def test_status_shows_progress(dispatcher, transport, registry, sessions):
    await dispatcher.handle(document(1, "good"))
    job_id = sessions.get_current_job(USER)
    registry.claim_job(job_id)
    registry.record_progress(job_id, Outcome.VALID)

    await dispatcher.handle(text(2, "/status"))
    reply = transport.last_text
    assert "Status: *running*" in reply
    assert "Progress: 1/2 (50.0%)" in reply
    assert "Valid (OTP sent): 1" in reply


@pytest.mark.asyncio
async def test_cancel_running_job(dispatcher, transport, registry, sessions):
    await dispatcher.handle(document(1, "good"))
    job_id = sessions.get_current_job(USER)
    registry.claim_job(job_id)

    await dispatcher.handle(text(2, "/cancel"))

    assert transport.last_text == messages.CANCELLED
    assert registry.get_job(job_id).status == JobStatus.CANCELLED
    assert sessions.get_current_job(USER) is None
    assert registry.record_progress(job_id, Outcome.VALID) is None
    assert registry.get_job(job_id).processed == 0


@pytest.mark.asyncio
async def test_cancel_without_job(dispatcher, transport):
    await dispatcher.handle(text(1, "/cancel"))
    assert transport.last_text == messages.NOTHING_TO_CANCEL


@pytest.mark.asyncio
async def test_cancel_with_dangling_session(dispatcher, transport, sessions):
    sessions.set_current_job(USER, "vanished")

    await dispatcher.handle(text(1, "/cancel"))

    assert transport.last_text == messages.NOTHING_TO_CANCEL
    assert sessions.get_current_job(USER) is None


@pytest.mark.asyncio
async def test_cancel_finished_job(dispatcher, transport, registry, sessions):
    await dispatcher.handle(document(1, "good"))
    job_id = sessions.get_current_job(USER)
    registry.record_progress(job_id, Outcome.VALID)
    registry.record_progress(job_id, Outcome.INVALID)

    await dispatcher.handle(text(2, "/cancel"))

    assert transport.last_text == messages.already_finished("completed")
    assert registry.get_job(job_id).status == JobStatus.COMPLETED


@pytest.mark.asyncio
async def test_new_upload_replaces_and_cancels_previous(dispatcher, transport, registry, sessions):
    await dispatcher.handle(document(1, "good"))
    first = sessions.get_current_job(USER)
    await dispatcher.handle(document(2, "good"))
    second = sessions.get_current_job(USER)

    assert second != first
    assert registry.get_job(first).status == JobStatus.CANCELLED
    assert registry.get_job(second).status == JobStatus.QUEUED


@pytest.mark.asyncio
async def test_new_upload_can_leave_previous_running(transport, registry, sessions, results_dir):
    transport.files = {"good": UPLOAD}
    dispatcher = CommandDispatcher(transport, registry, sessions, results_dir, cancel_on_replace=False)
    await dispatcher.handle(document(1, "good"))
    first = sessions.get_current_job(USER)
    await dispatcher.handle(document(2, "good"))

    assert registry.get_job(first).status == JobStatus.QUEUED
    assert sessions.get_current_job(USER) != first


@pytest.mark.asyncio
async def test_results_without_job(dispatcher, transport):
    await dispatcher.handle(text(1, "/results"))
    assert transport.last_text == messages.NO_JOB


@pytest.mark.asyncio
async def test_results_not_ready_then_delivered(dispatcher, transport, sessions, results_dir):
    await dispatcher.handle(document(1, "good"))
    job_id = sessions.get_current_job(USER)

    await dispatcher.handle(text(2, "/results"))
    assert transport.last_text == messages.RESULTS_NOT_READY
    assert transport.documents == []

    path = results_path(results_dir, job_id)
    write_json_atomic(path, {"job_id": job_id, "results": []})
    await dispatcher.handle(text(3, "/results"))

    assert transport.documents == [(CHAT, path, f"results_{job_id}.json", messages.results_caption(job_id))]


@pytest.mark.asyncio
async def test_store_failure_reports_generic_failure(dispatcher, transport, sessions, monkeypatch):
    def locked(user_id):
        raise LockTimeout("users", 0.1)

    monkeypatch.setattr(sessions, "get_current_job", locked)
    await dispatcher.handle(text(1, "/status"))

    assert transport.last_text == messages.FAILURE


@pytest.mark.asyncio
async def test_whitelist_drops_other_users(transport, registry, sessions, results_dir):
    dispatcher = CommandDispatcher(transport, registry, sessions, results_dir, allowed_users=[USER])

    await dispatcher.handle(text(1, "/help", user=999))
    assert transport.sent == []

    await dispatcher.handle(text(2, "/help"))
    assert transport.last_text == messages.HELP


@pytest.mark.asyncio
async def test_session_failure_on_upload_leaves_no_runnable_orphan(dispatcher, transport, registry, sessions, monkeypatch):
    await dispatcher.handle(document(1, "good"))
    first = sessions.get_current_job(USER)

    def locked(user_id, job_id):
        raise LockTimeout("users", 0.1)

    monkeypatch.setattr(sessions, "set_current_job", locked)
    await dispatcher.handle(document(2, "good"))

    assert transport.last_text == messages.FAILURE
    assert [j.id for j in registry.list_jobs(JobStatus.QUEUED)] == [first]
    second = [j for j in registry.list_jobs() if j.id != first][0]
    assert second.status == JobStatus.FAILED
    assert sessions.get_current_job(USER) == first


@pytest.mark.asyncio
async def test_failed_replace_restores_previous_session(dispatcher, transport, registry, sessions, monkeypatch):
    await dispatcher.handle(document(1, "good"))
    first = sessions.get_current_job(USER)
    update_job = registry.update_job

    def cancel_locked(job_id, **fields):
        if job_id == first:
            raise LockTimeout("jobs", 0.1)
        return update_job(job_id, **fields)

    monkeypatch.setattr(registry, "update_job", cancel_locked)
    await dispatcher.handle(document(2, "good"))

    assert transport.last_text == messages.FAILURE
    assert sessions.get_current_job(USER) == first
    assert registry.get_job(first).status == JobStatus.QUEUED
    assert [j.status for j in registry.list_jobs()] == [JobStatus.QUEUED, JobStatus.FAILED]


@pytest.mark.asyncio
async def test_disk_error_on_upload_reports_failure(dispatcher, transport, registry, monkeypatch):
    def disk_full(src, dst):
        raise OSError(errno.ENOSPC, "No space left on device")

    monkeypatch.setattr(store_module.os, "replace", disk_full)
    await dispatcher.handle(document(1, "good"))
    monkeypatch.undo()

    assert transport.sent == [(CHAT, messages.FAILURE)]
    assert registry.list_jobs() == []


@pytest.mark.asyncio
async def test_unexpected_error_still_gets_a_reply(dispatcher, transport, registry, monkeypatch):
    def broken(job_id):
        raise KeyError(job_id)

    monkeypatch.setattr(registry, "get_job", broken)
    await dispatcher.handle(text(1, "/status"))

    assert transport.sent == [(CHAT, messages.FAILURE)]


@pytest.mark.asyncio
async def test_slow_store_does_not_block_event_loop(dispatcher, transport, sessions, monkeypatch):
    def slow_lookup(user_id):
        time.sleep(0.3)
        return None

    monkeypatch.setattr(sessions, "get_current_job", slow_lookup)
    done = asyncio.Event()
    ticks = []

    async def handle():
        await dispatcher.handle(text(1, "/status"))
        done.set()

    async def ticker():
        while not done.is_set():
            ticks.append(1)
            await asyncio.sleep(0.01)

    await asyncio.gather(handle(), ticker())

    assert transport.last_text == messages.NO_ACTIVE_JOB
    assert len(ticks) > 5
