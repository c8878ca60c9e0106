from contextvars import ContextVar
from typing import Any, Callable, Optional, TypeVar

from cohortlab.core.db import Store
from cohortlab.repositories.worker_repo import WorkerRepository

T = TypeVar("T")

# Task-local: every thread and every asyncio task sees its own binding.
_current_group: ContextVar[Optional[str]] = ContextVar("current_group", default=None)


def current_group() -> Optional[str]:
    """Returns the group bound in the caller's scope, or None."""
    return _current_group.get()


def bind_group(group_id: str, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
    """
    Runs ``fn`` with ``group_id`` as the current group.

    The binding covers every call made from ``fn`` (including coroutines it
    awaits, since asyncio tasks copy the context) and is restored on exit.
    """
    token = _current_group.set(group_id)
    try:
        return fn(*args, **kwargs)
    finally:
        _current_group.reset(token)


class GroupScope:
    """
    Group scoping for a server: the task-local "current group" plus the
    persistent userId -> groupId mapping kept on the worker record.
    """

    def __init__(self, store: Store):
        self.store = store

    bind_group = staticmethod(bind_group)
    current_group = staticmethod(current_group)

    def set_user_group(self, user_id: str, group_id: str) -> None:
        with self.store.session() as db:
            WorkerRepository(db).set_group(user_id, group_id)

    def clear_user_group(self, user_id: str) -> None:
        with self.store.session() as db:
            WorkerRepository(db).set_group(user_id, None)

    def get_user_group(self, user_id: str) -> Optional[str]:
        with self.store.session() as db:
            worker = WorkerRepository(db).get_worker(user_id)
            return worker.group_id if worker else None
