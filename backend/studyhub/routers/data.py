# SPDX-License-Identifier: Apache-2.0
"""Field dictionary and data record endpoints of a study."""
from __future__ import annotations

from fastapi import APIRouter, Depends, Query

from studyhub.dependencies import Services, get_requester, get_services
from studyhub.schemas import DataClip, DataDelete, DataRequest, FieldInput, Requester

router = APIRouter(prefix="/studies/{study_id}", tags=["data"])


@router.get("/fields")
def list_fields(
    study_id: int,
    project_id: int | None = Query(None),
    version_id: str | None = Query(None),
    live: bool = Query(False),
    requester: Requester = Depends(get_requester),
    services: Services = Depends(get_services),
):
    """Visible field catalogue, one definition per field id."""
    return services.data_core.get_study_fields(requester, study_id, project_id, version_id, live)


@router.post("/fields")
def create_fields(
    study_id: int,
    body: list[FieldInput],
    requester: Requester = Depends(get_requester),
    services: Services = Depends(get_services),
):
    return {"errors": services.data_core.create_new_fields(requester, study_id, body)}


@router.patch("/fields/{field_id}")
def edit_field(
    study_id: int,
    field_id: str,
    body: FieldInput,
    requester: Requester = Depends(get_requester),
    services: Services = Depends(get_services),
):
    return services.data_core.edit_field(requester, study_id, field_id, body)


@router.delete("/fields/{field_id}")
def delete_field(
    study_id: int,
    field_id: str,
    requester: Requester = Depends(get_requester),
    services: Services = Depends(get_services),
):
    entry = services.data_core.delete_field(requester, study_id, field_id)
    return {"field_id": entry.field_id, "deleted": entry.date_deleted}


@router.post("/data")
def upload_data(
    study_id: int,
    body: list[DataClip],
    requester: Requester = Depends(get_requester),
    services: Services = Depends(get_services),
):
    """Append live records; rejected clips are reported, the rest are stored."""
    return {"errors": services.data_core.upload_data(requester, study_id, body)}


@router.post("/data/query")
def query_data(
    study_id: int,
    body: DataRequest,
    requester: Requester = Depends(get_requester),
    services: Services = Depends(get_services),
):
    return {"data": services.data_core.get_data_records(requester, study_id, body)}


@router.post("/data/delete")
def delete_data(
    study_id: int,
    body: DataDelete,
    requester: Requester = Depends(get_requester),
    services: Services = Depends(get_services),
):
    errors = services.data_core.delete_data_records(
        requester, study_id, body.subject_ids, body.visit_ids, body.field_ids
    )
    return {"errors": errors}


@router.get("/data/check")
def check_data(
    study_id: int,
    requester: Requester = Depends(get_requester),
    services: Services = Depends(get_services),
):
    return {"errors": services.data_core.check_data_complete(requester, study_id)}
