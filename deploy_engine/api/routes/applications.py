from typing import List, NoReturn

from fastapi import APIRouter, Depends, HTTPException

from deploy_engine.api.container import get_application_service
from deploy_engine.api.schemas.applications import (
    ActionResponse,
    ApplicationResponse,
    AutoUpdateRequest,
    DescriptorBody,
    DescriptorImportRequest,
    DescriptorResponse,
    ImportRequest,
    LogEntry,
    PipelineRequest,
    ReconcileResponse,
    UpdateCheckResponse,
)
from deploy_engine.core.errors import (
    ApplicationAlreadyExists,
    ApplicationError,
    ApplicationNotFound,
    PipelineAlreadyRunning,
)
from deploy_engine.orchestrator.pipeline import PipelineOptions

router = APIRouter(prefix="/applications", tags=["applications"])


def _raise_http(e: ApplicationError) -> NoReturn:
    if isinstance(e, ApplicationNotFound):
        raise HTTPException(status_code=404, detail=str(e))
    if isinstance(e, (PipelineAlreadyRunning, ApplicationAlreadyExists)):
        raise HTTPException(status_code=409, detail=str(e))
    raise HTTPException(status_code=400, detail=str(e))


# -------------------------
# IMPORT
# -------------------------

@router.post("/import", response_model=ApplicationResponse)
async def import_application(
    request: ImportRequest,
    service=Depends(get_application_service),
):
    try:
        record = await service.import_application(
            request.source_location,
            auto_update=request.auto_update,
            interval=request.interval,
        )
    except ApplicationError as e:
        _raise_http(e)
    return ApplicationResponse.from_record(record)


@router.post("/descriptor", response_model=ApplicationResponse)
def import_descriptor(
    request: DescriptorImportRequest,
    service=Depends(get_application_service),
):
    try:
        record = service.import_descriptor(request.descriptor, name=request.name)
    except ApplicationError as e:
        _raise_http(e)
    return ApplicationResponse.from_record(record)


# -------------------------
# READ
# -------------------------

@router.get("/", response_model=List[ApplicationResponse])
def list_applications(service=Depends(get_application_service)):
    return [ApplicationResponse.from_record(r) for r in service.list_applications()]


@router.get("/queue")
def queue_status(service=Depends(get_application_service)):
    return service.queue_status()


@router.get("/{application_id}", response_model=ApplicationResponse)
def get_application(application_id: str, service=Depends(get_application_service)):
    try:
        record = service.get_application(application_id)
    except ApplicationError as e:
        _raise_http(e)
    return ApplicationResponse.from_record(record)


@router.get("/{application_id}/logs", response_model=List[LogEntry])
def get_logs(application_id: str, service=Depends(get_application_service)):
    try:
        return service.get_logs(application_id)
    except ApplicationError as e:
        _raise_http(e)


# -------------------------
# PIPELINE
# -------------------------

@router.post("/{application_id}/pipeline", response_model=ActionResponse, status_code=202)
async def start_pipeline(
    application_id: str,
    request: PipelineRequest = PipelineRequest(),
    service=Depends(get_application_service),
):
    options = PipelineOptions(
        run_as_user=request.run_as_user,
        run_pre_install_hook=request.run_pre_install_hook,
        force_delete_existing_data=request.force_delete_existing_data,
        transfer_environment=request.transfer_environment,
    )
    try:
        result = service.start_pipeline(application_id, options)
    except ApplicationError as e:
        _raise_http(e)

    if result.already_running:
        raise HTTPException(status_code=409, detail=result.message)
    return ActionResponse(**result.to_dict())


# -------------------------
# DESCRIPTOR
# -------------------------

@router.get("/{application_id}/descriptor", response_model=DescriptorResponse)
def get_descriptor(application_id: str, service=Depends(get_application_service)):
    try:
        text = service.get_descriptor(application_id)
    except ApplicationError as e:
        _raise_http(e)
    return DescriptorResponse(application_id=application_id, descriptor=text)


@router.put("/{application_id}/descriptor", response_model=DescriptorResponse)
def put_descriptor(
    application_id: str,
    body: DescriptorBody,
    service=Depends(get_application_service),
):
    try:
        service.put_descriptor(application_id, body.descriptor)
    except ApplicationError as e:
        _raise_http(e)
    return DescriptorResponse(application_id=application_id, descriptor=body.descriptor)


@router.post("/{application_id}/reconcile", response_model=ReconcileResponse)
def reconcile_descriptor(
    application_id: str,
    body: DescriptorBody,
    service=Depends(get_application_service),
):
    try:
        result = service.reconcile(application_id, body.descriptor)
    except ApplicationError as e:
        _raise_http(e)
    return ReconcileResponse(
        structurally_changed=result.structurally_changed,
        transfer_map=result.transfer_map,
        warnings=[str(w) for w in result.warnings],
        diff=result.diff_lines(),
    )


# -------------------------
# START / STOP / REMOVE
# -------------------------

@router.post("/{application_id}/start", response_model=ActionResponse)
async def start_application(application_id: str, service=Depends(get_application_service)):
    try:
        return await service.toggle_running(application_id, start=True)
    except ApplicationError as e:
        _raise_http(e)


@router.post("/{application_id}/stop", response_model=ActionResponse)
async def stop_application(application_id: str, service=Depends(get_application_service)):
    try:
        return await service.toggle_running(application_id, start=False)
    except ApplicationError as e:
        _raise_http(e)


@router.delete("/{application_id}", response_model=ActionResponse)
async def remove_application(
    application_id: str,
    preserve_data: bool = True,
    service=Depends(get_application_service),
):
    try:
        return await service.remove_application(application_id, preserve_data=preserve_data)
    except ApplicationError as e:
        _raise_http(e)


# -------------------------
# UPDATES
# -------------------------

@router.post("/{application_id}/check-updates", response_model=UpdateCheckResponse)
async def check_updates(application_id: str, service=Depends(get_application_service)):
    try:
        return await service.check_updates(application_id)
    except ApplicationError as e:
        _raise_http(e)


@router.put("/{application_id}/auto-update", response_model=ApplicationResponse)
def set_auto_update(
    application_id: str,
    request: AutoUpdateRequest,
    service=Depends(get_application_service),
):
    try:
        record = service.set_auto_update(application_id, request.enabled, request.interval)
    except ApplicationError as e:
        _raise_http(e)
    return ApplicationResponse.from_record(record)
