"""Shared fixtures: an in-memory backend and per-user client stacks over it."""

import pytest

from deskline.memory import MemoryBackend
from deskline.models.identity import Role

from helpers import Clock, Stack


@pytest.fixture
def clock() -> Clock:
    return Clock()


@pytest.fixture
def backend(clock) -> MemoryBackend:
    b = MemoryBackend(clock=clock)
    b.add_user("admin-a", email="alice@example.com", full_name="Alice", role=Role.ADMIN)
    b.add_user("admin-b", email="bob@example.com", full_name="Bob", role=Role.ADMIN)
    b.add_user("u1", email="carol@example.com", full_name="Carol", role=Role.USER)
    b.add_user("u2", email="dave@example.com")
    return b


@pytest.fixture
def make_stack(backend):
    async def _make(user_id: str) -> Stack:
        stack = Stack(backend, user_id)
        await stack.sign_in()
        return stack
    return _make
