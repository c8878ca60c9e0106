# services/lobby_service.py
import logging
import threading
from collections import defaultdict
from typing import TYPE_CHECKING, Any, Callable

from cohortlab.core.errors import StateError
from cohortlab.models.orm.worker import WorkerState
from cohortlab.repositories.assignment_repo import AssignmentRepository
from cohortlab.repositories.lobby_repo import LobbyRepository
from cohortlab.repositories.worker_repo import WorkerRepository
from cohortlab.services.assignment_service import Assignment

if TYPE_CHECKING:
    from cohortlab.services.batch_service import Batch

logger = logging.getLogger(__name__)

AUTO_ASSIGN = "auto-assign"
RESET_MULTI_GROUPS = "reset-multi-groups"
USER_JOINED = "user-joined"
USER_LEFT = "user-left"


class SignalBus:
    """Named signals with any number of subscribers per name."""

    def __init__(self):
        self._handlers: dict[str, list[Callable[..., Any]]] = defaultdict(list)
        self._lock = threading.Lock()

    def on(self, name: str, handler: Callable[..., Any]) -> None:
        with self._lock:
            self._handlers[name].append(handler)

    def off(self, name: str, handler: Callable[..., Any]) -> None:
        with self._lock:
            if handler in self._handlers[name]:
                self._handlers[name].remove(handler)

    def listeners(self, name: str) -> list[Callable[..., Any]]:
        with self._lock:
            return list(self._handlers[name])

    def emit(self, name: str, *args: Any, **kwargs: Any) -> int:
        """Calls every handler of ``name`` in subscription order; returns how many ran."""
        handlers = self.listeners(name)
        for handler in handlers:
            handler(*args, **kwargs)
        return len(handlers)


class Lobby:
    """
    Holding pool for participants of one batch awaiting assignment.

    The lobby only records who is waiting and relays signals; the batch's
    assigner decides where participants go.
    """

    def __init__(self, batch: "Batch"):
        self.batch = batch
        self.server = batch.server
        self.events = SignalBus()

    def add_assignment(self, asst: Assignment) -> None:
        if asst.batch_id != self.batch.batch_id:
            raise StateError(
                f"Assignment {asst.asst_id} belongs to batch {asst.batch_id}, "
                f"not {self.batch.batch_id}"
            )

        with self.server.store.session() as db:
            LobbyRepository(db).add_user(self.batch.batch_id, asst.user_id, asst.asst_id)
            WorkerRepository(db).set_state(asst.user_id, WorkerState.LOBBY)

        logger.info("User %s entered lobby of batch %s", asst.user_id, self.batch.batch_id)
        self.events.emit(USER_JOINED, asst)

        assigner = self.batch.assigner
        if assigner is not None:
            assigner.user_joined(asst)

    def remove_assignment(self, asst: Assignment) -> bool:
        return self.remove_user(asst.user_id)

    def remove_user(self, user_id: str) -> bool:
        removed = bool(self.pluck_users([user_id]))
        if removed:
            logger.info("User %s left lobby of batch %s", user_id, self.batch.batch_id)
            self.events.emit(USER_LEFT, user_id)
        return removed

    def pluck_users(self, user_ids: list[str]) -> list[str]:
        """Takes users out of the lobby without notifying subscribers."""
        with self.server.store.session() as db:
            return LobbyRepository(db).remove_users(self.batch.batch_id, list(user_ids))

    def contains(self, user_id: str) -> bool:
        with self.server.store.session() as db:
            return LobbyRepository(db).get_entry(self.batch.batch_id, user_id) is not None

    def get_assignments(self) -> list[Assignment]:
        """Waiting assignments in arrival order."""
        with self.server.store.session() as db:
            entries = LobbyRepository(db).get_entries(self.batch.batch_id)
            repo = AssignmentRepository(db)
            records = [repo.get_assignment(entry.asst_id) for entry in entries]
        return [Assignment(self.server, record) for record in records if record is not None]

    def get_user_ids(self) -> list[str]:
        with self.server.store.session() as db:
            return [entry.user_id for entry in LobbyRepository(db).get_entries(self.batch.batch_id)]

    def count(self) -> int:
        return len(self.get_user_ids())

    def emit(self, name: str, *args: Any) -> int:
        logger.info("Lobby of batch %s emits %r", self.batch.batch_id, name)
        return self.events.emit(name, *args)
