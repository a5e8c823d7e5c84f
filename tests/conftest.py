import json
import random
import string
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from os import environ
from pathlib import Path
from uuid import uuid4

# Tests run with in-process backends, no SQLite file, no Redis, no Twilio
environ.setdefault(
    "CONFIG_JSON",
    json.dumps(
        {
            "channel": {"mode": "memory"},
            "database": {"mode": "memory"},
            "scheduler": {"enabled": False},
            "sms": {"mode": "console"},
        }
    ),
)

import pytest  # noqa: E402

from memocare.helpers.config_models.cache import MemoryModel  # noqa: E402
from memocare.helpers.config_models.database import SqliteModel  # noqa: E402
from memocare.models.reminder import CategoryEnum, ReminderModel  # noqa: E402
from memocare.persistence.istore import IStore  # noqa: E402
from memocare.persistence.memory import MemoryCache, MemoryStore  # noqa: E402
from memocare.persistence.sqlite import SqliteStore  # noqa: E402

NOW = datetime(2025, 1, 1, 10, 37, tzinfo=UTC)


@pytest.fixture
def random_text() -> str:
    text = "".join(random.choice(string.printable) for _ in range(100))
    return text


@pytest.fixture
def now() -> datetime:
    return NOW


@pytest.fixture
def owner_id() -> str:
    return str(uuid4())


@pytest.fixture
def make_reminder(owner_id: str) -> Callable[..., ReminderModel]:
    """
    Build a reminder of the test owner, due at `NOW` unless told otherwise.
    """

    def _make(
        recurrence: str | dict = "hourly",
        next_run_at: datetime = NOW,
        **kwargs,
    ) -> ReminderModel:
        return ReminderModel.model_validate(
            {
                "category": CategoryEnum.MEDICATION,
                "created_at": next_run_at - timedelta(days=1),
                "label": "Take the blue pill",
                "next_run_at": next_run_at,
                "owner_id": owner_id,
                "recurrence": recurrence,
                **kwargs,
            }
        )

    return _make


def sqlite_store(path: Path) -> SqliteStore:
    return SqliteStore(
        cache=MemoryCache(MemoryModel()),
        config=SqliteModel(path=str(path / "memocare")),
    )


@pytest.fixture(
    params=[
        pytest.param("memory", id="memory"),
        pytest.param("sqlite", id="sqlite"),
    ],
)
def store(request: pytest.FixtureRequest, tmp_path: Path) -> IStore:
    if request.param == "sqlite":
        return sqlite_store(tmp_path)
    return MemoryStore()
