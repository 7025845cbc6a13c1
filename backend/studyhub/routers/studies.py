# SPDX-License-Identifier: Apache-2.0
"""Study endpoints: list, get, create, edit, delete, projects, summary, data versions, standardizations."""
from __future__ import annotations

from fastapi import APIRouter, Body, Depends

from studyhub.core.exceptions import NoPermissionError
from studyhub.core.security import sanitize_text
from studyhub.dependencies import Services, get_requester, get_services
from studyhub.schemas import DataVersionCreate, Requester, StandardizationCreate, StudyCreate, StudyEdit

router = APIRouter(prefix="/studies", tags=["studies"])


@router.get("")
def list_studies(
    requester: Requester = Depends(get_requester),
    services: Services = Depends(get_services),
):
    """Studies the requester can see (all of them for admins)."""
    return services.study_core.list_studies(requester)


@router.post("")
def create_study(
    body: StudyCreate,
    requester: Requester = Depends(get_requester),
    services: Services = Depends(get_services),
):
    return services.study_core.create_new_study(
        requester,
        name=sanitize_text(body.name, 200),
        description=sanitize_text(body.description),
        type_=body.type,
    )


@router.get("/{study_id}")
def get_study(
    study_id: int,
    requester: Requester = Depends(get_requester),
    services: Services = Depends(get_services),
):
    return services.study_core.get_study(requester, study_id)


@router.patch("/{study_id}")
def edit_study(
    study_id: int,
    body: StudyEdit,
    requester: Requester = Depends(get_requester),
    services: Services = Depends(get_services),
):
    return services.study_core.edit_study(requester, study_id, sanitize_text(body.description))


@router.delete("/{study_id}")
def delete_study(
    study_id: int,
    requester: Requester = Depends(get_requester),
    services: Services = Depends(get_services),
):
    """Soft-delete the study together with its projects and roles."""
    study = services.study_core.delete_study(requester, study_id)
    return {"id": study.id, "deleted": study.deleted}


@router.get("/{study_id}/projects")
def study_projects(
    study_id: int,
    requester: Requester = Depends(get_requester),
    services: Services = Depends(get_services),
):
    return services.study_core.projects_of_study(requester, study_id)


@router.get("/{study_id}/summary")
def study_summary(
    study_id: int,
    requester: Requester = Depends(get_requester),
    services: Services = Depends(get_services),
):
    return services.data_core.study_summary(requester, study_id)


@router.post("/{study_id}/versions")
def create_data_version(
    study_id: int,
    body: DataVersionCreate,
    requester: Requester = Depends(get_requester),
    services: Services = Depends(get_services),
):
    """Freeze the study's live data into a new data version (admin only)."""
    if not requester.is_admin:
        raise NoPermissionError("Only admins can create data versions.")
    return services.ledger.create_new_data_version(study_id, body.version, body.tag)


@router.put("/{study_id}/versions/current")
def set_current_data_version(
    study_id: int,
    data_version_id: str = Body(..., embed=True),
    requester: Requester = Depends(get_requester),
    services: Services = Depends(get_services),
):
    """Move the current data version pointer (admin only)."""
    if not requester.is_admin:
        raise NoPermissionError("Only admins can change the current data version.")
    return services.ledger.set_data_version_as_current(study_id, data_version_id)


@router.post("/{study_id}/standardizations")
def create_standardization(
    study_id: int,
    body: StandardizationCreate,
    requester: Requester = Depends(get_requester),
    services: Services = Depends(get_services),
):
    return services.standardizer.create_standardization(
        requester, study_id, body.type, body.field, body.field_id, body.rules
    )


@router.delete("/{study_id}/standardizations/{standardization_id}")
def delete_standardization(
    study_id: int,
    standardization_id: int,
    requester: Requester = Depends(get_requester),
    services: Services = Depends(get_services),
):
    template = services.standardizer.delete_standardization(requester, standardization_id)
    return {"id": template.id, "deleted": template.deleted}
