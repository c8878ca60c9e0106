from concurrent.futures import ThreadPoolExecutor

import pytest

from cohortlab.core.errors import StateError
from cohortlab.models.orm.batch import GroupingMode
from cohortlab.models.orm.worker import WorkerState
from cohortlab.models.schemas.batch import AssignerConfigModel, GroupConfig
from cohortlab.services.assigners import (
    RoundRobinAssigner,
    SequentialAssigner,
    TutorialGroupAssigner,
    TutorialMultiGroupAssigner,
    build_assigner,
)
from cohortlab.services.lobby_service import AUTO_ASSIGN, RESET_MULTI_GROUPS
from cohortlab.services.server import ExperimentServer

SIZES = [1, 1, 1, 1, 2, 2, 4, 4, 8, 16, 32, 16, 8, 4, 4, 2, 2, 1, 1, 1, 1]


def _state(server, user_id):
    return server.connection_state(user_id).state


def _group_instances(batch):
    return [instance for instance in batch.get_instances() if instance.treatment_names() != ["tutorial"]]


def _finish_tutorial(server, batch, count):
    """Puts ``count`` users through one ended tutorial instance, outside the lobby."""
    tutorial = batch.create_instance(["tutorial"])
    for n in range(count):
        tutorial.add_assignment(server.assignments.get_or_create(batch.batch_id, f"w{n}", f"u{n}"))
    tutorial.teardown(return_to_lobby=False)
    return tutorial


# --- sequential -------------------------------------------------------------


def test_sequential_fills_instances_in_order(server, make_batch):
    batch = make_batch(grouping_mode=GroupingMode.GROUP_SIZE, group_val=2, treatment_ids=["group"])
    batch.set_assigner(SequentialAssigner())

    for n in range(5):
        server.connect(f"u{n}", f"w{n}", batch.batch_id)

    instances = batch.get_instances()
    assert [instance.users() for instance in instances] == [["u0", "u1"], ["u2", "u3"], ["u4"]]
    assert all(instance.to_model().assignable for instance in instances)
    assert all(instance.treatment_names() == ["group"] for instance in instances)
    assert batch.lobby.count() == 0


def test_sequential_sends_finished_users_to_exit_survey(server, make_batch):
    batch = make_batch(grouping_mode=GroupingMode.GROUP_SIZE, group_val=2, treatment_ids=["group"])
    batch.set_assigner(SequentialAssigner())
    server.connect("u0", "w0", batch.batch_id)

    batch.get_instances()[0].teardown()

    assert _state(server, "u0") == WorkerState.EXIT_SURVEY
    assert len(batch.get_instances()) == 1
    assert batch.lobby.count() == 0


def test_sequential_needs_a_group_size(batch):
    with pytest.raises(StateError):
        batch.set_assigner(SequentialAssigner())


# --- round robin ------------------------------------------------------------


def test_round_robin_balances_fixed_instances(server, make_batch):
    batch = make_batch(grouping_mode=GroupingMode.GROUP_COUNT, group_val=3, treatment_ids=["group"])
    batch.set_assigner(RoundRobinAssigner())
    experiment_ids = batch.experiment_ids

    for n in range(7):
        server.connect(f"u{n}", f"w{n}", batch.batch_id)

    counts = batch.member_counts(experiment_ids)
    assert [counts[group_id] for group_id in experiment_ids] == [3, 2, 2]
    assert [instance.group_id for instance in batch.get_instances()] == experiment_ids


def test_round_robin_skips_ended_instances(server, make_batch):
    batch = make_batch(grouping_mode=GroupingMode.GROUP_COUNT, group_val=2, treatment_ids=["group"])
    batch.set_assigner(RoundRobinAssigner())
    first, second = batch.experiment_ids
    server.instances.get_instance(first).teardown()

    for n in range(3):
        server.connect(f"u{n}", f"w{n}", batch.batch_id)

    assert server.instances.get_instance(second).users() == ["u0", "u1", "u2"]


# --- tutorial + one group ---------------------------------------------------


def test_tutorial_group_full_journey(server, batch):
    batch.set_assigner(TutorialGroupAssigner(["tutorial"], ["group"]))

    state = server.connect("u1", "w1", batch.batch_id)
    assert state.state == WorkerState.EXPERIMENT
    tutorial = server.instances.get_instance(state.group_id)
    assert tutorial.treatment_names() == ["tutorial"]
    assert batch.lobby.count() == 0

    tutorial.teardown()
    assert _state(server, "u1") == WorkerState.LOBBY
    assert batch.lobby.get_user_ids() == ["u1"]

    assert batch.lobby.emit(AUTO_ASSIGN) == 1
    assert _state(server, "u1") == WorkerState.EXPERIMENT
    group = server.instances.get_instance(server.scope.get_user_group("u1"))
    assert group.treatment_names() == ["group"]
    asst = server.assignments.get_current_user_assignment("u1")
    assert [entry.id for entry in asst.get_instances()] == [tutorial.group_id, group.group_id]

    group.teardown()
    assert _state(server, "u1") == WorkerState.EXIT_SURVEY
    assert len(batch.get_instances()) == 2
    assert batch.lobby.count() == 0


def test_tutorial_is_shared_while_open(server, batch):
    batch.set_assigner(TutorialGroupAssigner(["tutorial"], ["group"]))

    first = server.connect("u1", "w1", batch.batch_id).group_id
    second = server.connect("u2", "w2", batch.batch_id).group_id

    assert first == second
    server.instances.get_instance(first).teardown(return_to_lobby=False)

    third = server.connect("u3", "w3", batch.batch_id).group_id
    assert third != first


def test_tutorial_group_auto_assign_admits_later_arrivals(server, batch):
    batch.set_assigner(TutorialGroupAssigner(["tutorial"], ["group"]))
    batch.lobby.emit(AUTO_ASSIGN)

    tutorial = server.instances.get_instance(server.connect("u1", "w1", batch.batch_id).group_id)
    tutorial.teardown()

    group_id = server.scope.get_user_group("u1")
    assert group_id is not None
    assert server.instances.get_instance(group_id).treatment_names() == ["group"]


def test_user_with_two_instances_reconnects_to_exit_survey(server, batch):
    batch.set_assigner(TutorialGroupAssigner(["tutorial"], ["group"], auto_assign=True))
    tutorial = server.instances.get_instance(server.connect("u1", "w1", batch.batch_id).group_id)
    tutorial.teardown()
    group = server.instances.get_instance(server.scope.get_user_group("u1"))
    group.teardown(return_to_lobby=False)

    assert server.reconnect("u1", "w1").state == WorkerState.EXIT_SURVEY
    assert server.reconnect("u1", "w1").state == WorkerState.EXIT_SURVEY
    assert len(batch.get_instances()) == 2


def test_user_in_open_instance_reconnects_to_it(server, batch):
    batch.set_assigner(TutorialGroupAssigner(["tutorial"], ["group"]))
    group_id = server.connect("u1", "w1", batch.batch_id).group_id

    state = server.reconnect("u1", "w1")

    assert state.state == WorkerState.EXPERIMENT
    assert state.group_id == group_id
    assert len(batch.get_instances()) == 1


# --- tutorial + multiple groups ---------------------------------------------


def test_multi_group_fills_groups_in_order(server, batch):
    configs = [GroupConfig(treatments=["group"], size=size) for size in (1, 2)]
    batch.set_assigner(TutorialMultiGroupAssigner(["tutorial"], configs))
    _finish_tutorial(server, batch, 4)

    for n in range(4):
        server.connect(f"u{n}", f"w{n}", batch.batch_id)

    groups = _group_instances(batch)
    assert [instance.users() for instance in groups] == [["u0"], ["u1", "u2"]]
    assert [instance.to_model().capacity for instance in groups] == [1, 2]
    # every group is used up
    assert batch.lobby.get_user_ids() == ["u3"]
    assert _state(server, "u3") == WorkerState.LOBBY


def test_multi_group_absorbing_tail(server, batch):
    configs = [
        GroupConfig(treatments=["group"], size=1),
        GroupConfig(treatments=["group"], size=2),
        GroupConfig(treatments=["group", "big_payoff"]),
    ]
    batch.set_assigner(TutorialMultiGroupAssigner(["tutorial"], configs))
    _finish_tutorial(server, batch, 10)

    with ThreadPoolExecutor(max_workers=8) as pool:
        list(pool.map(lambda n: server.connect(f"u{n}", f"w{n}", batch.batch_id), range(10)))

    groups = _group_instances(batch)
    assert [len(instance.users()) for instance in groups] == [1, 2, 7]
    assert groups[2].treatment()["payoff"] == 5
    assert batch.lobby.count() == 0


def test_multi_group_concurrent_admissions_follow_sizes(server, batch):
    configs = [GroupConfig(treatments=["group"], size=size) for size in SIZES]
    _finish_tutorial(server, batch, 128)
    batch.set_assigner(TutorialMultiGroupAssigner(["tutorial"], configs))

    with ThreadPoolExecutor(max_workers=32) as pool:
        list(pool.map(lambda n: server.connect(f"u{n}", f"w{n}", batch.batch_id), range(128)))

    groups = _group_instances(batch)
    assert len(groups) == len(SIZES)
    assert [len(instance.users()) for instance in groups] == SIZES
    assert batch.lobby.count() == 128 - sum(SIZES)

    members = [user_id for instance in groups for user_id in instance.users()]
    assert len(set(members)) == len(members)


def test_multi_group_recovers_progress(server, session_factory, batch):
    configs = [GroupConfig(treatments=["group"], size=size) for size in (2, 2, 3, 2)]
    batch.set_assigner(TutorialMultiGroupAssigner(["tutorial"], configs))
    _finish_tutorial(server, batch, 5)
    for n in range(5):
        server.connect(f"u{n}", f"w{n}", batch.batch_id)
    live = batch.assigner

    restarted = ExperimentServer(session_factory)
    recovered = TutorialMultiGroupAssigner(["tutorial"], configs)
    restarted.batches.get_batch(batch.batch_id).set_assigner(recovered)

    assert (live.current_group, live.current_filled) == (2, 1)
    assert (recovered.current_group, recovered.current_filled) == (2, 1)
    assert recovered.current_instance.group_id == live.current_instance.group_id


def test_multi_group_recovery_stops_on_mismatch(server, batch):
    configs = [GroupConfig(treatments=["group"], size=1), GroupConfig(treatments=["group"], size=1)]
    _finish_tutorial(server, batch, 1)
    batch.create_instance(["big_payoff"], capacity=1)

    assigner = TutorialMultiGroupAssigner(["tutorial"], configs)
    batch.set_assigner(assigner)

    assert assigner.progress == (-1, None, 0)


def test_multi_group_recovery_ignores_open_tutorial(server, batch):
    configs = [GroupConfig(treatments=["group"], size=2)]
    tutorial = batch.create_instance(["tutorial"])
    group = batch.create_instance(["group"], capacity=2)
    group.add_assignment(server.assignments.get_or_create(batch.batch_id, "w1", "u1"))

    assigner = TutorialMultiGroupAssigner(["tutorial"], configs)
    batch.set_assigner(assigner)

    assert assigner.progress == (0, group, 1)
    assert assigner.tutorial_instance is tutorial


def test_multi_group_reset_starts_over(server, batch):
    configs = [GroupConfig(treatments=["group"], size=1)]
    batch.set_assigner(TutorialMultiGroupAssigner(["tutorial"], configs))
    _finish_tutorial(server, batch, 3)
    server.connect("u0", "w0", batch.batch_id)
    server.connect("u1", "w1", batch.batch_id)
    assert batch.lobby.get_user_ids() == ["u1"]

    batch.lobby.emit(RESET_MULTI_GROUPS)
    assert batch.assigner.progress == (-1, None, 0)

    server.connect("u2", "w2", batch.batch_id)
    groups = _group_instances(batch)
    assert [instance.users() for instance in groups] == [["u0"], ["u2"]]


def test_multi_group_skips_torn_down_current_instance(server, batch):
    configs = [GroupConfig(treatments=["group"], size=3), GroupConfig(treatments=["group"], size=3)]
    batch.set_assigner(TutorialMultiGroupAssigner(["tutorial"], configs))
    _finish_tutorial(server, batch, 2)
    server.connect("u0", "w0", batch.batch_id)
    first = batch.assigner.current_instance
    first.teardown(return_to_lobby=False)

    server.connect("u1", "w1", batch.batch_id)

    assert batch.assigner.current_group == 1
    assert batch.assigner.current_instance.users() == ["u1"]


def test_build_assigner_from_config():
    tutorial = build_assigner(
        AssignerConfigModel(kind="tutorial_group", tutorial_treatments=["t"], group_treatments=["g"])
    )
    multi = build_assigner(
        AssignerConfigModel(
            kind="tutorial_multi_group",
            tutorial_treatments=["t"],
            group_configs=[{"treatments": ["g"], "size": 2}, {"treatments": ["g"]}],
        )
    )

    assert isinstance(tutorial, TutorialGroupAssigner)
    assert tutorial.group_treatments == ["g"]
    assert [config.size for config in multi.group_configs] == [2, None]
    assert multi.group_configs[1].is_absorbing
    assert isinstance(build_assigner(AssignerConfigModel(kind="round_robin")), RoundRobinAssigner)


def _restart(session_factory, batch, assigner):
    """A fresh server on the same store with ``assigner`` installed on ``batch``."""
    restarted = ExperimentServer(session_factory)
    restarted_batch = restarted.batches.get_batch(batch.batch_id)
    restarted_batch.set_assigner(assigner)
    return restarted, restarted_batch


def test_multi_group_recovery_counts_torn_down_groups(server, session_factory, batch):
    configs = [GroupConfig(treatments=["group"], size=size) for size in (1, 3)]
    batch.set_assigner(TutorialMultiGroupAssigner(["tutorial"], configs))
    _finish_tutorial(server, batch, 5)
    server.connect("u0", "w0", batch.batch_id)
    server.connect("u1", "w1", batch.batch_id)
    _group_instances(batch)[0].teardown()
    live = batch.assigner

    recovered = TutorialMultiGroupAssigner(["tutorial"], configs)
    restarted, restarted_batch = _restart(session_factory, batch, recovered)

    assert (recovered.current_group, recovered.current_filled) == (1, 1)
    assert (live.current_group, live.current_filled) == (1, 1)
    assert recovered.current_instance.group_id == live.current_instance.group_id

    for n in range(2, 5):
        restarted.connect(f"u{n}", f"w{n}", batch.batch_id)

    groups = _group_instances(restarted_batch)
    assert [len(instance.users()) for instance in groups] == [1, 3]
    assert restarted_batch.lobby.get_user_ids() == ["u4"]


def test_multi_group_recovery_after_current_group_ended(server, session_factory, batch):
    configs = [GroupConfig(treatments=["group"], size=size) for size in (2, 2)]
    batch.set_assigner(TutorialMultiGroupAssigner(["tutorial"], configs))
    _finish_tutorial(server, batch, 2)
    server.connect("u0", "w0", batch.batch_id)
    _group_instances(batch)[0].teardown(return_to_lobby=False)

    recovered = TutorialMultiGroupAssigner(["tutorial"], configs)
    restarted, restarted_batch = _restart(session_factory, batch, recovered)
    assert recovered.progress == (0, None, 1)

    restarted.connect("u1", "w1", batch.batch_id)

    groups = _group_instances(restarted_batch)
    assert [instance.users() for instance in groups] == [["u0"], ["u1"]]
    assert recovered.current_group == 1


def test_multi_group_recovery_starts_after_last_reset(server, session_factory, batch):
    configs = [GroupConfig(treatments=["group"], size=1)]
    batch.set_assigner(TutorialMultiGroupAssigner(["tutorial"], configs))
    _finish_tutorial(server, batch, 2)
    server.connect("u0", "w0", batch.batch_id)
    batch.lobby.emit(RESET_MULTI_GROUPS)
    server.connect("u1", "w1", batch.batch_id)
    live = batch.assigner

    recovered = TutorialMultiGroupAssigner(["tutorial"], configs)
    _restart(session_factory, batch, recovered)

    assert (recovered.current_group, recovered.current_filled) == (0, 1)
    assert recovered.current_instance.group_id == live.current_instance.group_id
    assert recovered.current_instance.users() == ["u1"]


def test_tutorial_group_auto_assign_survives_restart(server, session_factory, batch):
    batch.set_assigner(TutorialGroupAssigner(["tutorial"], ["group"]))
    tutorial_id = server.connect("u1", "w1", batch.batch_id).group_id
    server.connect("u2", "w2", batch.batch_id)
    batch.lobby.emit(AUTO_ASSIGN)

    recovered = TutorialGroupAssigner(["tutorial"], ["group"])
    restarted, _ = _restart(session_factory, batch, recovered)
    assert recovered.auto_assign is True
    assert recovered.tutorial_instance.group_id == tutorial_id

    restarted.instances.get_instance(tutorial_id).teardown()

    assert [_state(restarted, user_id) for user_id in ("u1", "u2")] == [
        WorkerState.EXPERIMENT,
        WorkerState.EXPERIMENT,
    ]
    assert restarted.scope.get_user_group("u1") == restarted.scope.get_user_group("u2")


def test_tutorial_group_without_signal_recovers_waiting(server, session_factory, batch):
    batch.set_assigner(TutorialGroupAssigner(["tutorial"], ["group"]))

    recovered = TutorialGroupAssigner(["tutorial"], ["group"])
    _restart(session_factory, batch, recovered)

    assert recovered.auto_assign is False
