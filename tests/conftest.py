"""Shared fixtures for the roomwatch test suite."""

from __future__ import annotations

import shutil
from collections.abc import Iterator
from typing import TYPE_CHECKING

import pytest

from roomwatch.cache import AccountCache
from roomwatch.credential_store import CredentialStore
from roomwatch.models import AccountCreate, LiveListing, LiveMetrics, RoomInfo

if TYPE_CHECKING:
    from testcontainers.postgres import PostgresContainer

docker_available = shutil.which("docker") is not None


def make_account_create(**overrides) -> AccountCreate:
    data = {
        "account_name": "Main shop",
        "login_name": "ops@example.com",
        "organization_id": "1790000000000001",
        "cookie": "sessionid=abc",
        "csrf_token": "csrf-abc",
    }
    data.update(overrides)
    return AccountCreate(**data)


def make_room(room_id: str = "7400000000000000001", **overrides) -> RoomInfo:
    data = {
        "user_id": "u-1",
        "unique_id": "anchor_one",
        "nickname": "Anchor One",
        "room_id": room_id,
        "status": 2,
        "metrics": LiveMetrics(live_st=1_760_000_000, live_dt=3600),
    }
    data.update(overrides)
    return RoomInfo(**data)


def make_listing(*rooms: RoomInfo) -> LiveListing:
    return LiveListing(rooms=list(rooms), ies_count=len(rooms))


@pytest.fixture
async def store(tmp_path) -> CredentialStore:
    store = CredentialStore(tmp_path / "accounts.db")
    await store.ensure_table()
    return store


@pytest.fixture
async def cache(store: CredentialStore) -> AccountCache:
    cache = AccountCache(store)
    await cache.initialize()
    return cache


@pytest.fixture(scope="session")
def postgres_container() -> Iterator[PostgresContainer]:
    """Shared Postgres testcontainer for the DB-backed tests of this session."""
    from testcontainers.postgres import PostgresContainer

    with PostgresContainer("postgres:16") as pg:
        yield pg
