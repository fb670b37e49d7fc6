from typing import Any, Dict, List

import pytest
import pytest_asyncio

from async_email_queue.models import EmailJobCreate
from async_email_queue.persistence import QueueStore
from async_email_queue.transport import EmailTransport

START = 1_700_000_000.0


class FakeClock:
    """Manually advanced epoch clock; ``sleep`` moves time forward."""

    def __init__(self, now: float = START):
        self.now = now
        self.sleeps: List[float] = []

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


class DummyTransport(EmailTransport):
    def __init__(self, clock=None):
        self.clock = clock
        self.sent: List[Dict[str, Any]] = []
        self.errors: Dict[str, Exception] = {}
        self.closed = False

    async def send(self, to, subject, html, from_addr=None):
        for address in to:
            if address in self.errors:
                raise self.errors[address]
        self.sent.append(
            {
                "to": list(to),
                "subject": subject,
                "html": html,
                "from": from_addr,
                "at": self.clock() if self.clock else None,
            }
        )
        return f"msg-{len(self.sent)}"

    async def close(self):
        self.closed = True


def make_job(**overrides) -> EmailJobCreate:
    data = {
        "recipient_email": "parent@example.com",
        "subject": "Field trip",
        "body": "<p>Reminder</p>",
        "school_id": "school-a",
    }
    data.update(overrides)
    return EmailJobCreate.model_validate(data)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def transport(clock):
    return DummyTransport(clock)


@pytest_asyncio.fixture
async def store(tmp_path):
    queue_store = QueueStore(str(tmp_path / "queue.db"))
    await queue_store.init_db()
    yield queue_store
    await queue_store.close()
