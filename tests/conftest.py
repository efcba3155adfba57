import sys
from pathlib import Path

import pytest

# Ensure repo root is on sys.path so `import checkbot...` works in tests
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from checkbot.core.errors import TransportError  # noqa: E402
from checkbot.memory.jobs import JobRegistry  # noqa: E402
from checkbot.memory.sessions import SessionIndex  # noqa: E402
from checkbot.memory.store import Store  # noqa: E402


@pytest.fixture
def store(tmp_path):
    return Store(str(tmp_path / "store"), lock_timeout=2.0)


@pytest.fixture
def registry(store):
    return JobRegistry(store)


@pytest.fixture
def sessions(store):
    return SessionIndex(store)


@pytest.fixture
def results_dir(tmp_path):
    path = tmp_path / "results"
    path.mkdir()
    return str(path)


class FakeTransport:
    """Records outbound traffic; inbound polls are served from a script of batches/errors."""

    def __init__(self, batches=(), files=None):
        self.batches = list(batches)
        self.files = files or {}
        self.polls = []
        self.sent = []
        self.documents = []

    async def poll(self, offset, timeout):
        self.polls.append(offset)
        if not self.batches:
            return []
        batch = self.batches.pop(0)
        if isinstance(batch, Exception):
            raise batch
        return batch

    async def fetch_file(self, file_id):
        if file_id not in self.files:
            raise TransportError(f"no such file {file_id}")
        return self.files[file_id]

    async def send_text(self, chat_id, text, parse_mode=None):
        self.sent.append((chat_id, text))
        return True

    async def send_document(self, chat_id, path, filename, caption=None):
        self.documents.append((chat_id, path, filename, caption))
        return True

    @property
    def last_text(self):
        return self.sent[-1][1]


@pytest.fixture
def transport():
    return FakeTransport()
