# services/assigners.py
"""
Assignment policies.

An assigner is installed on one batch at a time (``Batch.set_assigner``) and
is told about every assignment entering that batch's lobby through
``user_joined``. Policies keep no state that cannot be rebuilt: ``recover``
reconstructs progress from stored instances, so a freshly constructed
assigner resumes where a previous process stopped.

Admissions of one assigner are serialized by its lock. Instance capacity is
additionally enforced by the store, so an admission that loses a race moves
on to the next candidate instead of overfilling one.
"""
import logging
import threading
from typing import TYPE_CHECKING, Any, Callable, Optional, Sequence

from cohortlab.core.errors import InstanceFullError, StateError
from cohortlab.models.schemas.batch import AssignerConfigModel, GroupConfig
from cohortlab.services.assignment_service import Assignment
from cohortlab.services.instance_service import Instance
from cohortlab.services.lobby_service import AUTO_ASSIGN, RESET_MULTI_GROUPS

if TYPE_CHECKING:
    from cohortlab.services.batch_service import Batch
    from cohortlab.services.lobby_service import Lobby

logger = logging.getLogger(__name__)


class Assigner:
    """Base class for assignment policies."""

    def __init__(self):
        self.batch: Optional["Batch"] = None
        self.lobby: Optional["Lobby"] = None
        # Re-entrant: init handlers run under the lock may tear down and
        # send users back through user_joined on the same thread.
        self._lock = threading.RLock()
        self._subscriptions: list[tuple[str, Callable[..., Any]]] = []

    def initialize(self, batch: "Batch") -> None:
        """Installs the assigner on ``batch`` and rebuilds its progress."""
        self.batch = batch
        self.lobby = batch.lobby
        self.recover()

    def uninstall(self) -> None:
        for name, handler in self._subscriptions:
            self.lobby.events.off(name, handler)
        self._subscriptions = []

    def subscribe(self, name: str, handler: Callable[..., Any]) -> None:
        self.lobby.events.on(name, handler)
        self._subscriptions.append((name, handler))

    def recover(self) -> None:
        pass

    def user_joined(self, asst: Assignment) -> Optional[Instance]:
        raise NotImplementedError

    def assign_to_instance(self, assts: Sequence[Assignment], instance: Instance) -> None:
        """Moves assignments from the lobby into ``instance``."""
        for asst in assts:
            instance.add_assignment(asst)
            self.lobby.pluck_users([asst.user_id])

    def assign_to_new_instance(
        self,
        assts: Sequence[Assignment],
        treatments: list[str],
        capacity: Optional[int] = None,
    ) -> Instance:
        instance = self.batch.create_instance(treatments, capacity=capacity)
        instance.setup()
        self.assign_to_instance(assts, instance)
        return instance

    def route_to_exit_survey(self, asst: Assignment) -> None:
        self.lobby.pluck_users([asst.user_id])
        asst.show_exit_survey()


class SequentialAssigner(Assigner):
    """
    Fills assignable instances one after the other up to the batch group
    size, creating a new one when all are full.
    """

    def initialize(self, batch: "Batch") -> None:
        if batch.group_val is None:
            raise StateError(f"Batch {batch.batch_id} has no group size for sequential assignment")
        super().initialize(batch)

    def user_joined(self, asst: Assignment) -> Optional[Instance]:
        if asst.instance_count() > 0:
            self.route_to_exit_survey(asst)
            return None

        with self._lock:
            group_size = self.batch.group_val
            candidates = self.batch.get_instances(open_only=True, assignable=True)
            counts = self.batch.member_counts([instance.group_id for instance in candidates])

            for instance in candidates:
                if counts[instance.group_id] >= group_size:
                    continue
                try:
                    self.assign_to_instance([asst], instance)
                except StateError:
                    # filled up or ended since the counts were read
                    continue
                return instance

            instance = self.batch.create_instance(
                self.batch.treatments(), capacity=group_size, assignable=True
            )
            instance.setup()
            self.assign_to_instance([asst], instance)
            return instance


class RoundRobinAssigner(Assigner):
    """
    Spreads participants over the batch's fixed set of instances, always
    picking the one with the fewest members. Never creates instances.
    """

    def user_joined(self, asst: Assignment) -> Optional[Instance]:
        if asst.instance_count() > 0:
            self.route_to_exit_survey(asst)
            return None

        with self._lock:
            instances = [
                instance
                for instance in (
                    self.batch.server.instances.get_instance(group_id)
                    for group_id in self.batch.experiment_ids
                )
                if not instance.is_ended()
            ]
            if not instances:
                logger.warning(
                    "Batch %s has no open instances; %s waits in lobby",
                    self.batch.batch_id,
                    asst.user_id,
                )
                return None

            counts = self.batch.member_counts([instance.group_id for instance in instances])
            # sorted() is stable, so ties keep list order
            for instance in sorted(instances, key=lambda i: counts[i.group_id]):
                try:
                    self.assign_to_instance([asst], instance)
                except StateError:
                    continue
                return instance

            logger.warning("All instances of batch %s are closed or full", self.batch.batch_id)
            return None


class TutorialAssigner(Assigner):
    """
    Shared tutorial stage: a participant's first instance is the currently
    open tutorial instance, created when none is open.
    """

    completed_instances_for_exit = 2

    def __init__(self, tutorial_treatments: Sequence[str]):
        super().__init__()
        self.tutorial_treatments = list(tutorial_treatments)
        self.tutorial_instance: Optional[Instance] = None

    def recover(self) -> None:
        with self._lock:
            self.tutorial_instance = None
            for instance in self.batch.get_instances(open_only=True):
                if instance.treatment_names() == self.tutorial_treatments:
                    self.tutorial_instance = instance

    def is_tutorial(self, instance: Instance) -> bool:
        return instance.treatment_names() == self.tutorial_treatments

    def assign_tutorial(self, asst: Assignment) -> Instance:
        with self._lock:
            instance = self.tutorial_instance
            if instance is not None:
                try:
                    self.assign_to_instance([asst], instance)
                    return instance
                except StateError:
                    logger.info("Tutorial instance %s closed; opening a new one", instance.group_id)

            self.tutorial_instance = self.assign_to_new_instance([asst], self.tutorial_treatments)
            return self.tutorial_instance

    def user_joined(self, asst: Assignment) -> Optional[Instance]:
        completed = asst.instance_count()

        if completed == 0:
            return self.assign_tutorial(asst)

        if completed >= self.completed_instances_for_exit:
            self.route_to_exit_survey(asst)
            return None

        return self.assign_group_stage(asst)

    def assign_group_stage(self, asst: Assignment) -> Optional[Instance]:
        raise NotImplementedError


class TutorialGroupAssigner(TutorialAssigner):
    """
    Tutorial first, then one shared group instance.

    Participants back from the tutorial wait in the lobby until the lobby's
    "auto-assign" signal. The signal moves everybody waiting with exactly one
    completed instance into the group instance, and later arrivals join it
    directly.
    """

    def __init__(
        self,
        tutorial_treatments: Sequence[str],
        group_treatments: Sequence[str],
        auto_assign: bool = False,
    ):
        super().__init__(tutorial_treatments)
        self.group_treatments = list(group_treatments)
        self.auto_assign = auto_assign
        self.group_instance: Optional[Instance] = None

    def initialize(self, batch: "Batch") -> None:
        super().initialize(batch)
        self.subscribe(AUTO_ASSIGN, self._on_auto_assign)

    def recover(self) -> None:
        super().recover()
        with self._lock:
            if self.batch.last_event(AUTO_ASSIGN) is not None:
                self.auto_assign = True

            self.group_instance = None
            for instance in self.batch.get_instances(open_only=True):
                if instance.treatment_names() == self.group_treatments:
                    self.group_instance = instance
                    break

    def _on_auto_assign(self, *args: Any) -> None:
        # stored so a restarted assigner keeps admitting directly
        self.batch.record_event(AUTO_ASSIGN)
        self.auto_assign = True
        self.assign_all()

    def _open_group_instance(self) -> Instance:
        if self.group_instance is None or self.group_instance.is_ended():
            self.group_instance = self.batch.create_instance(self.group_treatments)
            self.group_instance.setup()
        return self.group_instance

    def assign_all(self) -> list[Assignment]:
        """Moves every lobby participant who finished the tutorial into the group."""
        with self._lock:
            waiting = [asst for asst in self.lobby.get_assignments() if asst.instance_count() == 1]
            if not waiting:
                return []

            self.assign_to_instance(waiting, self._open_group_instance())
            logger.info("Auto-assigned %d users in batch %s", len(waiting), self.batch.batch_id)
            return waiting

    def assign_group_stage(self, asst: Assignment) -> Optional[Instance]:
        if not self.auto_assign:
            return None

        with self._lock:
            instance = self._open_group_instance()
            self.assign_to_instance([asst], instance)
            return instance


class TutorialMultiGroupAssigner(TutorialAssigner):
    """
    Tutorial first, then a sequence of group instances sized by
    ``group_configs``.

    Group-stage participants fill the instance of ``group_configs[current_group]``
    until it reaches its size; the next config's instance is created on the
    next admission. A config with ``size=None`` absorbs everybody after it is
    reached. When every config is used up, participants wait in the lobby.
    """

    def __init__(self, tutorial_treatments: Sequence[str], group_configs: Sequence[GroupConfig | dict]):
        super().__init__(tutorial_treatments)
        self.group_configs = [GroupConfig.model_validate(config) for config in group_configs]
        self.current_group = -1
        self.current_instance: Optional[Instance] = None
        self.current_filled = 0

    def initialize(self, batch: "Batch") -> None:
        super().initialize(batch)
        self.subscribe(RESET_MULTI_GROUPS, self.reset)

    @property
    def progress(self) -> tuple[int, Optional[Instance], int]:
        return self.current_group, self.current_instance, self.current_filled

    def reset(self, *args: Any) -> None:
        with self._lock:
            # instances created before this marker are ignored by recover
            self.batch.record_event(RESET_MULTI_GROUPS)
            self.current_group = -1
            self.current_instance = None
            self.current_filled = 0
        logger.info("Multi-group progress reset for batch %s", self.batch.batch_id)

    def recover(self) -> None:
        """
        Rebuilds progress from the group-stage instances of the batch created
        since the last reset.

        Instances are matched to ``group_configs`` in creation order, ended
        ones included, so each stored instance uses up one config. The scan
        stops at the first open instance that still has room.
        """
        super().recover()
        with self._lock:
            self.current_group = -1
            self.current_instance = None
            self.current_filled = 0

            last_reset = self.batch.last_event(RESET_MULTI_GROUPS)
            stored = [
                instance
                for instance in self.batch.get_instances(
                    created_after=last_reset.timestamp if last_reset else None
                )
                if not self.is_tutorial(instance)
            ]
            counts = self.batch.member_counts([instance.group_id for instance in stored])

            for index, (instance, config) in enumerate(zip(stored, self.group_configs)):
                if instance.treatment_names() != config.treatments:
                    logger.warning(
                        "Instance %s does not match group config %d; recovery stops there",
                        instance.group_id,
                        index,
                    )
                    break

                self.current_group = index
                self.current_filled = counts[instance.group_id]

                if instance.is_ended():
                    self.current_instance = None
                    continue

                self.current_instance = instance
                if config.size is None or self.current_filled < config.size:
                    break

        logger.info(
            "Recovered multi-group progress for batch %s: group %d, %d filled",
            self.batch.batch_id,
            self.current_group,
            self.current_filled,
        )

    def _has_room(self) -> bool:
        if self.current_instance is None:
            return False
        size = self.group_configs[self.current_group].size
        return size is None or self.current_filled < size

    def _advance(self) -> Optional[Instance]:
        next_group = self.current_group + 1
        if next_group >= len(self.group_configs):
            return None

        config = self.group_configs[next_group]
        instance = self.batch.create_instance(config.treatments, capacity=config.size)
        instance.setup()

        self.current_group = next_group
        self.current_instance = instance
        self.current_filled = 0
        return instance

    def assign_group_stage(self, asst: Assignment) -> Optional[Instance]:
        with self._lock:
            while True:
                instance = self.current_instance if self._has_room() else self._advance()
                if instance is None:
                    logger.warning(
                        "All %d groups of batch %s are filled; %s waits in lobby",
                        len(self.group_configs),
                        self.batch.batch_id,
                        asst.user_id,
                    )
                    return None

                try:
                    added = instance.add_assignment(asst)
                except InstanceFullError:
                    # filled by someone else; its slot count is authoritative
                    self.current_instance = None
                    continue
                except StateError:
                    # torn down before it filled up
                    self.current_instance = None
                    continue

                if added:
                    self.current_filled += 1
                self.lobby.pluck_users([asst.user_id])
                return instance


ASSIGNERS = {
    "sequential": SequentialAssigner,
    "round_robin": RoundRobinAssigner,
    "tutorial_group": TutorialGroupAssigner,
    "tutorial_multi_group": TutorialMultiGroupAssigner,
}


def build_assigner(config: AssignerConfigModel) -> Assigner:
    """Constructs the assigner described by an API payload."""
    if config.kind == "tutorial_group":
        return TutorialGroupAssigner(config.tutorial_treatments, config.group_treatments)
    if config.kind == "tutorial_multi_group":
        return TutorialMultiGroupAssigner(config.tutorial_treatments, config.group_configs)
    return ASSIGNERS[config.kind]()
