from __future__ import annotations

from datetime import timedelta
from itertools import count

import pytest

from campusconnect.clubs import ClubRepository
from campusconnect.entities import CLUBS, UserRef
from campusconnect.errors import ErrorKind


@pytest.fixture()
def clubs(store, now):
    ticks = count()
    return ClubRepository(store, clock=lambda: now + timedelta(minutes=next(ticks)))


@pytest.fixture()
def creator():
    return UserRef("founder", "Fran")


def test_create_makes_creator_first_member(clubs, store, creator):
    result = clubs.create({"name": " Chess Club ", "category": "games"}, creator)

    assert result.success
    data = store.get(CLUBS, result.data.id).data
    assert data["name"] == "Chess Club"
    assert data["members"] == ["founder"]
    assert data["member_count"] == 1
    assert data["is_active"] is True


@pytest.mark.parametrize("fields", [{}, {"name": " "}, {"name": "X", "members": ["a"]}])
def test_create_validates_fields(clubs, creator, fields):
    assert clubs.create(fields, creator).error is ErrorKind.INVALID_INPUT


def test_join_and_leave_keep_count_in_sync(clubs, store, creator):
    club = clubs.create({"name": "Chess Club"}, creator).data

    assert clubs.join(club.id, "u1").success
    assert clubs.join(club.id, "u1").error is ErrorKind.ALREADY_MEMBER
    assert clubs.leave(club.id, "u2").error is ErrorKind.NOT_MEMBER
    left = clubs.leave(club.id, "founder")
    assert left.success and left.data.member_count == 1

    data = store.get(CLUBS, club.id).data
    assert data["members"] == ["u1"]
    assert data["member_count"] == len(data["members"])


def test_missing_club(clubs):
    result = clubs.join("nope", "u1")
    assert result.error is ErrorKind.NOT_FOUND
    assert result.message == "Club not found"


def test_mirror_lists_active_clubs_newest_first(clubs, store, creator):
    clubs.start()
    first = clubs.create({"name": "First"}, creator).data
    second = clubs.create({"name": "Second"}, creator).data
    store.update(CLUBS, first.id, {"is_active": False})
    third = clubs.create({"name": "Third"}, creator).data

    assert [c.id for c in clubs.clubs] == [third.id, second.id]
    assert not clubs.state.loading
    clubs.stop()
