import asyncio

import pytest

from backend.coordinator import ReservationCoordinator
from backend.memory import MemoryRepository
from backend.schemas import Item, User


async def _seed(repo: MemoryRepository) -> None:
    for uid, name in (("u1", "Olive Owner"), ("u2", "Ben Borrower"), ("u3", "Cara Third")):
        await repo.users.create(User(id=uid, name=name, email=f"{uid}@mail.com"))
    await repo.items.create(Item(id="i1", name="Drill", description="Cordless drill", owner_id="u1"))
    await repo.items.create(Item(id="i2", name="Ladder", description="3m ladder", owner_id="u2"))


@pytest.fixture
def repo():
    repository = MemoryRepository()
    asyncio.run(_seed(repository))
    return repository


@pytest.fixture
def coordinator(repo):
    return ReservationCoordinator(repo)
