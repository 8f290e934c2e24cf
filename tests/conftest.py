"""Shared fakes: clock, chat transport and an in-memory grow repository."""

import itertools
import uuid
from datetime import date

import pytest

from conversation import ConversationEngine, ConversationStore
from flows import GrowFlows
from storage import MAX_ONGOING_GROWS, UPDATE_FIELDS, GrowLimitReached, StorageError

TODAY = date(2024, 3, 1)


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeTransport:
    def __init__(self):
        self.sent = []  # (chat_id, message_id, text)
        self.deleted = []  # (chat_id, message_id)
        self.unreachable = set()
        self._ids = itertools.count(100)

    async def send(self, chat_id, text):
        if chat_id in self.unreachable:
            raise RuntimeError(f"chat {chat_id} unreachable")
        message_id = next(self._ids)
        self.sent.append((chat_id, message_id, text))
        return message_id

    async def delete(self, chat_id, message_id):
        self.deleted.append((chat_id, message_id))

    def texts(self, chat_id=None) -> list:
        return [text for cid, _, text in self.sent if chat_id is None or cid == chat_id]

    def last(self, chat_id=None) -> str:
        return self.texts(chat_id)[-1]


class FakeRepo:
    def __init__(self):
        self.grows = {}
        self.updates = {}  # (grow_id, day) -> row
        self._order = itertools.count()

    def add_grow(self, user_id, **fields) -> dict:
        grow = {
            "id": str(uuid.uuid4()),
            "user_id": user_id,
            "start_date": date(2024, 1, 1),
            "flower_start_date": None,
            "harvest_date": None,
            "strain": "Blue Dream",
            "germination_method": "seed",
            "pot_size": "5 gallon",
            "current_stage": "vegetative",
            "is_harvested": False,
            "wet_weight": None,
            "dry_weight": None,
            "harvest_notes": None,
            "created_at": next(self._order),
        }
        grow.update(fields)
        self.grows[grow["id"]] = grow
        return grow

    def get_grow(self, grow_id):
        return self.grows.get(grow_id)

    def _ongoing(self, user_id=None) -> list:
        rows = [g for g in self.grows.values() if not g["is_harvested"]]
        if user_id is not None:
            rows = [g for g in rows if g["user_id"] == user_id]
        return sorted(rows, key=lambda g: g["created_at"], reverse=True)

    def get_active_grow(self, user_id):
        rows = self._ongoing(user_id)
        return rows[0] if rows else None

    def count_ongoing(self, user_id) -> int:
        return len(self._ongoing(user_id))

    def list_ongoing(self, user_id) -> list:
        return self._ongoing(user_id)

    def list_all_ongoing(self) -> list:
        return self._ongoing()

    def get_latest_unresulted_harvest(self, user_id):
        rows = [
            g for g in self.grows.values()
            if g["user_id"] == user_id and g["is_harvested"] and g["wet_weight"] is None
        ]
        rows.sort(key=lambda g: (g["harvest_date"], g["created_at"]), reverse=True)
        return rows[0] if rows else None

    def create_grow(self, user_id, start_date, strain, germination_method, pot_size, current_stage="vegetative"):
        if self.count_ongoing(user_id) >= MAX_ONGOING_GROWS:
            raise GrowLimitReached(f"You already have {MAX_ONGOING_GROWS} ongoing grows.")
        return self.add_grow(
            user_id,
            start_date=date.fromisoformat(start_date),
            strain=strain,
            germination_method=germination_method,
            pot_size=pot_size,
            current_stage=current_stage,
        )

    def _update(self, grow_id, **fields) -> dict:
        if grow_id not in self.grows:
            raise StorageError(f"grow {grow_id} not found")
        self.grows[grow_id].update(fields)
        return self.grows[grow_id]

    def start_flower(self, grow_id, day):
        return self._update(grow_id, flower_start_date=day, current_stage="flower")

    def harvest(self, grow_id, day):
        return self._update(grow_id, is_harvested=True, harvest_date=day)

    def record_results(self, grow_id, wet_weight, dry_weight, harvest_notes):
        return self._update(grow_id, wet_weight=wet_weight, dry_weight=dry_weight, harvest_notes=harvest_notes)

    def save_grow_update(self, grow_id, day, pictures=None, **fields):
        row = self.updates.setdefault(
            (grow_id, day),
            {"grow_id": grow_id, "update_date": day, "pictures": [], **{k: None for k in UPDATE_FIELDS}},
        )
        if pictures:
            row["pictures"] = list(pictures)
        for key, value in fields.items():
            if value is not None:
                row[key] = value
        return row

    def get_today_update(self, grow_id, today):
        return self.updates.get((grow_id, today))


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def store(clock):
    return ConversationStore(clock=clock)


@pytest.fixture
def engine(store, transport):
    return ConversationEngine(store, transport, delete_delay=0)


@pytest.fixture
def repo():
    return FakeRepo()


@pytest.fixture
def flows(repo, engine):
    return GrowFlows(repo, engine, today=lambda: TODAY)
