# services/admin_service.py
import logging
from typing import Any, Callable, Optional, Protocol

from cohortlab.core.auth import token_is_admin
from cohortlab.core.errors import AuthorizationError, StateError
from cohortlab.models.schemas.admin import BulkMessageModel, HitExtensionModel
from cohortlab.models.schemas.batch import AssignerConfigModel, BatchCreateModel
from cohortlab.models.schemas.treatment import TreatmentCreateModel
from cohortlab.services.assigners import Assigner
from cohortlab.services.batch_service import Batch
from cohortlab.services.server import ExperimentServer

logger = logging.getLogger(__name__)


class MarketplaceClient(Protocol):
    """Crowd-labor marketplace client. Failures raise ExternalServiceError."""

    def extend_hit(self, hit_id: str, assignments: int, seconds: int) -> Any: ...


class EmailClient(Protocol):
    """Outbound messaging client. Failures raise ExternalServiceError."""

    def send(self, worker_ids: list[str], subject: str, body: str) -> Any: ...


class AdminService:
    """
    Administrative entry points. Every operation asks the authorization hook
    first and raises AuthorizationError (403) when it refuses. Errors of the
    external clients are not caught.
    """

    def __init__(
        self,
        server: ExperimentServer,
        authorize: Optional[Callable[[str, str], bool]] = None,
        marketplace: Optional[MarketplaceClient] = None,
        email: Optional[EmailClient] = None,
    ):
        self.server = server
        self.authorize = authorize or token_is_admin
        self.marketplace = marketplace
        self.email = email

    def _check(self, token: str, action: str) -> None:
        if not self.authorize(token, action):
            logger.warning("Denied %s", action)
            raise AuthorizationError(f"Not authorized to {action}")

    def create_treatment(self, token: str, treatment_data: TreatmentCreateModel):
        self._check(token, "create_treatment")
        return self.server.create_treatment(treatment_data.name, treatment_data.params)

    def create_batch(self, token: str, batch_data: BatchCreateModel) -> Batch:
        self._check(token, "create_batch")
        return self.server.create_batch(batch_data)

    def set_batch_active(self, token: str, batch_id: str, active: bool) -> Batch:
        self._check(token, "set_batch_active")
        batch = self.server.batches.get_batch(batch_id)
        batch.set_active(active)
        return batch

    def install_assigner(self, token: str, batch_id: str, config: AssignerConfigModel) -> Assigner:
        self._check(token, "install_assigner")
        return self.server.install_assigner(batch_id, config)

    def emit_lobby_signal(self, token: str, batch_id: str, signal: str) -> int:
        self._check(token, "emit_lobby_signal")
        return self.server.batches.get_batch(batch_id).lobby.emit(signal)

    def teardown_instance(self, token: str, group_id: str, return_to_lobby: bool = True):
        self._check(token, "teardown_instance")
        return self.server.instances.get_instance(group_id).teardown(return_to_lobby)

    def send_bulk_message(self, token: str, message: BulkMessageModel) -> Any:
        self._check(token, "send_bulk_message")
        if self.email is None:
            raise StateError("No email client configured")

        result = self.email.send(message.worker_ids, message.subject, message.body)
        logger.info("Sent %r to %d workers", message.subject, len(message.worker_ids))
        return result

    def extend_hit(self, token: str, extension: HitExtensionModel) -> Any:
        self._check(token, "extend_hit")
        if self.marketplace is None:
            raise StateError("No marketplace client configured")

        return self.marketplace.extend_hit(extension.hit_id, extension.assignments, extension.seconds)
