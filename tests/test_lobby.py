import pytest

from cohortlab.core.errors import NotFoundError, StateError
from cohortlab.models.orm.assignment import AssignmentStatus
from cohortlab.models.orm.batch import GroupingMode
from cohortlab.services.assigners import TutorialGroupAssigner
from cohortlab.services.lobby_service import AUTO_ASSIGN, USER_JOINED, USER_LEFT, SignalBus


def test_signal_bus_calls_handlers_in_order():
    bus = SignalBus()
    calls = []

    def first(value):
        calls.append(("first", value))

    def second(value):
        calls.append(("second", value))

    bus.on("ping", first)
    bus.on("ping", second)

    assert bus.emit("ping", 1) == 2
    bus.off("ping", first)
    assert bus.emit("ping", 2) == 1
    assert bus.emit("other") == 0

    assert calls == [("first", 1), ("second", 1), ("second", 2)]


def test_lobby_tracks_waiting_users_in_arrival_order(server, batch):
    joined, left = [], []
    batch.lobby.events.on(USER_JOINED, lambda asst: joined.append(asst.user_id))
    batch.lobby.events.on(USER_LEFT, left.append)

    for n in (2, 1, 3):
        batch.lobby.add_assignment(server.assignments.get_or_create(batch.batch_id, f"w{n}", f"u{n}"))

    assert batch.lobby.get_user_ids() == ["u2", "u1", "u3"]
    assert [asst.user_id for asst in batch.lobby.get_assignments()] == ["u2", "u1", "u3"]
    assert batch.lobby.contains("u1")

    assert batch.lobby.pluck_users(["u1"]) == ["u1"]
    assert batch.lobby.remove_user("u3") is True
    assert batch.lobby.remove_user("u3") is False

    assert batch.lobby.get_user_ids() == ["u2"]
    assert joined == ["u2", "u1", "u3"]
    assert left == ["u3"]


def test_lobby_rejects_assignment_of_another_batch(server, make_batch):
    first, second = make_batch(), make_batch()
    asst = server.assignments.get_or_create(first.batch_id, "w1", "u1")

    with pytest.raises(StateError):
        second.lobby.add_assignment(asst)


def test_disconnect_removes_user_from_lobby(server, batch):
    server.connect("u1", "w1", batch.batch_id)
    assert batch.lobby.get_user_ids() == ["u1"]

    assert server.disconnect("u1") is True
    assert batch.lobby.count() == 0
    assert server.disconnect("u1") is False


def test_connect_picks_the_only_active_batch(server, make_batch):
    batch = make_batch()
    make_batch(active=False)

    server.connect("u1", "w1")

    assert batch.lobby.get_user_ids() == ["u1"]


def test_connect_without_a_unique_active_batch(server, make_batch):
    make_batch()
    make_batch()

    with pytest.raises(NotFoundError):
        server.connect("u1", "w1")


def test_reconnect_reuses_the_assignment(server, batch):
    server.connect("u1", "w1", batch.batch_id)
    first = server.assignments.get_current_user_assignment("u1")
    server.reconnect("u1", "w1")

    assert server.assignments.get_current_user_assignment("u1").asst_id == first.asst_id
    assert batch.lobby.get_user_ids() == ["u1"]


def test_returned_assignment_leaves_the_lobby(server, batch):
    server.connect("u1", "w1", batch.batch_id)
    asst = server.assignments.get_current_user_assignment("u1")

    server.return_assignment("u1")

    assert batch.lobby.count() == 0
    assert asst.status == AssignmentStatus.RETURNED
    assert server.assignments.get_current_user_assignment("u1") is None


def test_replacing_the_assigner_moves_subscriptions(server, batch):
    old = TutorialGroupAssigner(["tutorial"], ["group"])
    batch.set_assigner(old)
    assert batch.lobby.events.listeners(AUTO_ASSIGN) == [old._on_auto_assign]

    new = TutorialGroupAssigner(["tutorial"], ["group"])
    batch.set_assigner(new)

    assert batch.lobby.events.listeners(AUTO_ASSIGN) == [new._on_auto_assign]
    assert batch.assigner is new


def test_batch_without_group_val_needs_none_mode(make_batch):
    with pytest.raises(ValueError):
        make_batch(grouping_mode=GroupingMode.GROUP_SIZE)
