import threading
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Depends, Path, Query, Request, status
from fastapi.responses import JSONResponse
import uvicorn

from cohortlab.core.auth import require_auth_token
from cohortlab.core.db import SessionLocal, engine
from cohortlab.core.errors import CohortLabError
from cohortlab.core.logging_config import configure_logging
from cohortlab.core.settings import config_settings
from cohortlab.models.orm.registry import Base
from cohortlab.models.schemas.admin import (
    BulkMessageModel,
    ExternalCallResponseModel,
    HitExtensionModel,
)
from cohortlab.models.schemas.batch import AssignerConfigModel, BatchCreateModel, BatchModel
from cohortlab.models.schemas.connection import (
    ConnectionModel,
    ConnectionResponseModel,
    DisconnectModel,
)
from cohortlab.models.schemas.instance import InstanceModel, TeardownRequestModel
from cohortlab.models.schemas.treatment import TreatmentCreateModel, TreatmentModel
from cohortlab.services.admin_service import AdminService
from cohortlab.services.server import ExperimentServer

_server: ExperimentServer | None = None
_clients: tuple | None = None
_lock = threading.Lock()


def get_server() -> ExperimentServer:
    """The process-wide server; instance and batch registries live on it."""
    global _server
    if _server is None:
        # sync dependencies run in the threadpool
        with _lock:
            if _server is None:
                _server = ExperimentServer(SessionLocal)
    return _server


def _build_client(factory):
    return factory() if factory is not None else None


def get_external_clients() -> tuple:
    """
    Marketplace and email clients, built once from the factories named by
    MARKETPLACE_CLIENT and EMAIL_CLIENT. Either is None when not configured.
    """
    global _clients
    if _clients is None:
        with _lock:
            if _clients is None:
                _clients = (
                    _build_client(config_settings.MARKETPLACE_CLIENT),
                    _build_client(config_settings.EMAIL_CLIENT),
                )
    return _clients


def get_admin_service(
    server: ExperimentServer = Depends(get_server),
    clients: tuple = Depends(get_external_clients),
) -> AdminService:
    marketplace, email = clients
    return AdminService(server, marketplace=marketplace, email=email)


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging()
    Base.metadata.create_all(bind=engine)
    yield


app = FastAPI(
    title="cohortlab",
    description="Admits participants into treatment-tagged experiment groups.",
    version="0.1.0",
    dependencies=[Depends(require_auth_token)],
    lifespan=lifespan,
)


@app.exception_handler(CohortLabError)
async def handle_core_error(request: Request, exc: CohortLabError):
    return JSONResponse(status_code=exc.code, content=exc.to_dict())


# --- connection layer ---


@app.post(
    "/connections/connect",
    response_model=ConnectionResponseModel,
    status_code=status.HTTP_200_OK,
    summary="A participant connected or reconnected.",
)
def post_connect(
    connection: ConnectionModel,
    server: ExperimentServer = Depends(get_server),
):
    return server.connect(connection.user_id, connection.worker_id, connection.batch_id)


@app.post(
    "/connections/disconnect",
    status_code=status.HTTP_200_OK,
    summary="A participant disconnected.",
)
def post_disconnect(
    connection: DisconnectModel,
    server: ExperimentServer = Depends(get_server),
):
    return {"removed": server.disconnect(connection.user_id)}


# --- administration ---


@app.post(
    "/treatments",
    response_model=TreatmentModel,
    status_code=status.HTTP_201_CREATED,
)
def post_treatments(
    treatment_data: TreatmentCreateModel,
    token: str = Depends(require_auth_token),
    admin: AdminService = Depends(get_admin_service),
):
    return TreatmentModel.model_validate(admin.create_treatment(token, treatment_data))


@app.post(
    "/batches",
    response_model=BatchModel,
    status_code=status.HTTP_201_CREATED,
)
def post_batches(
    batch_data: BatchCreateModel,
    token: str = Depends(require_auth_token),
    admin: AdminService = Depends(get_admin_service),
):
    return admin.create_batch(token, batch_data).to_model()


@app.get(
    "/batches/{batch_id}",
    response_model=BatchModel,
    status_code=status.HTTP_200_OK,
)
def get_batch(
    batch_id: str = Path(..., description="The ID of the batch."),
    server: ExperimentServer = Depends(get_server),
):
    return server.batches.get_batch(batch_id).to_model()


@app.post(
    "/batches/{batch_id}/assigner",
    status_code=status.HTTP_200_OK,
    summary="Install the assignment policy of a batch",
)
def post_batch_assigner(
    config: AssignerConfigModel,
    batch_id: str = Path(..., description="The ID of the batch."),
    token: str = Depends(require_auth_token),
    admin: AdminService = Depends(get_admin_service),
):
    assigner = admin.install_assigner(token, batch_id, config)
    return {"batch_id": batch_id, "assigner": type(assigner).__name__}


@app.get(
    "/batches/{batch_id}/lobby",
    status_code=status.HTTP_200_OK,
)
def get_batch_lobby(
    batch_id: str = Path(..., description="The ID of the batch."),
    server: ExperimentServer = Depends(get_server),
):
    return {"user_ids": server.batches.get_batch(batch_id).lobby.get_user_ids()}


@app.post(
    "/batches/{batch_id}/lobby/signals/{signal}",
    status_code=status.HTTP_200_OK,
    summary="Emit a named lobby signal such as auto-assign",
)
def post_lobby_signal(
    batch_id: str = Path(..., description="The ID of the batch."),
    signal: str = Path(..., description="Signal name, e.g. 'auto-assign'."),
    token: str = Depends(require_auth_token),
    admin: AdminService = Depends(get_admin_service),
):
    return {"signal": signal, "handlers": admin.emit_lobby_signal(token, batch_id, signal)}


@app.get(
    "/instances/{group_id}",
    response_model=InstanceModel,
    status_code=status.HTTP_200_OK,
)
def get_instance(
    group_id: str = Path(..., description="The group ID of the instance."),
    server: ExperimentServer = Depends(get_server),
):
    return server.instances.get_instance(group_id).to_model()


@app.get(
    "/instances/{group_id}/logs",
    status_code=status.HTTP_200_OK,
    summary="Experiment log entries written for an instance",
)
def get_instance_logs(
    group_id: str = Path(..., description="The group ID of the instance."),
    kind: Optional[str] = Query(None, description="Only entries of this kind."),
    server: ExperimentServer = Depends(get_server),
):
    server.instances.get_instance(group_id)
    return [entry.to_dict() for entry in server.get_logs(group_id=group_id, kind=kind)]


@app.post(
    "/instances/{group_id}/teardown",
    response_model=InstanceModel,
    status_code=status.HTTP_200_OK,
)
def post_instance_teardown(
    request_data: TeardownRequestModel,
    group_id: str = Path(..., description="The group ID of the instance."),
    token: str = Depends(require_auth_token),
    admin: AdminService = Depends(get_admin_service),
):
    admin.teardown_instance(token, group_id, request_data.return_to_lobby)
    return admin.server.instances.get_instance(group_id).to_model()


@app.post(
    "/workers/messages",
    response_model=ExternalCallResponseModel,
    status_code=status.HTTP_200_OK,
)
def post_worker_messages(
    message: BulkMessageModel,
    token: str = Depends(require_auth_token),
    admin: AdminService = Depends(get_admin_service),
):
    return ExternalCallResponseModel(result=admin.send_bulk_message(token, message))


@app.post(
    "/hits/extend",
    response_model=ExternalCallResponseModel,
    status_code=status.HTTP_200_OK,
)
def post_hit_extension(
    extension: HitExtensionModel,
    token: str = Depends(require_auth_token),
    admin: AdminService = Depends(get_admin_service),
):
    return ExternalCallResponseModel(result=admin.extend_hit(token, extension))


if __name__ == "__main__":
    uvicorn.run("cohortlab.main:app", host="0.0.0.0", port=8000, reload=True)
