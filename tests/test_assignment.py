from concurrent.futures import ThreadPoolExecutor

import pytest
from sqlalchemy.exc import IntegrityError

from cohortlab.models.orm.assignment import AssignmentStatus
from cohortlab.repositories.assignment_repo import AssignmentRepository


def test_get_or_create_returns_the_current_assignment(server, batch):
    first = server.assignments.get_or_create(batch.batch_id, "w1", "u1")
    again = server.assignments.get_or_create(batch.batch_id, "w1", "u1")

    assert again.asst_id == first.asst_id
    assert first.status == AssignmentStatus.ASSIGNED


def test_concurrent_get_or_create_yields_one_assignment(server, batch):
    with ThreadPoolExecutor(max_workers=8) as pool:
        assts = list(pool.map(lambda _: server.assignments.get_or_create(batch.batch_id, "w1", "u1"), range(16)))

    assert len({asst.asst_id for asst in assts}) == 1


def test_store_rejects_a_second_current_assignment(server, batch):
    with pytest.raises(IntegrityError):
        with server.store.session() as db:
            repo = AssignmentRepository(db)
            repo.create_assignment(batch.batch_id, "w1", "u1")
            repo.create_assignment(batch.batch_id, "w1", "u1")


def test_returned_assignment_makes_room_for_a_new_one(server, batch):
    first = server.assignments.get_or_create(batch.batch_id, "w1", "u1")
    first.set_returned()

    second = server.assignments.get_or_create(batch.batch_id, "w1", "u1")

    assert second.asst_id != first.asst_id
    assert second.status == AssignmentStatus.ASSIGNED


def test_history_lists_joined_instances(server, batch):
    asst = server.assignments.get_or_create(batch.batch_id, "w1", "u1")
    first = batch.create_instance(["tutorial"])
    second = batch.create_instance(["group"])

    first.add_assignment(asst)
    first.teardown(return_to_lobby=False)
    second.add_assignment(asst)

    model = asst.to_model()
    assert [entry.id for entry in model.instances] == [first.group_id, second.group_id]
    assert model.instances[0].leave_time is None
    assert asst.instance_count() == 2
