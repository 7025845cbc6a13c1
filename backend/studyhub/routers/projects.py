# SPDX-License-Identifier: Apache-2.0
"""Project endpoints: create, get, delete, approved fields, summary."""
from __future__ import annotations

from fastapi import APIRouter, Depends

from studyhub.core.security import sanitize_text
from studyhub.dependencies import Services, get_requester, get_services
from studyhub.schemas import ListChanges, ProjectCreate, Requester

router = APIRouter(prefix="/projects", tags=["projects"])


@router.post("")
def create_project(
    body: ProjectCreate,
    requester: Requester = Depends(get_requester),
    services: Services = Depends(get_services),
):
    """New project with a pseudonym mapping over the study's current subjects."""
    return services.study_core.create_project_for_study(
        requester, body.study_id, sanitize_text(body.name, 200), body.approved_fields
    )


@router.get("/{project_id}")
def get_project(
    project_id: int,
    requester: Requester = Depends(get_requester),
    services: Services = Depends(get_services),
):
    return services.study_core.get_project(requester, project_id)


@router.delete("/{project_id}")
def delete_project(
    project_id: int,
    requester: Requester = Depends(get_requester),
    services: Services = Depends(get_services),
):
    project = services.study_core.delete_project(requester, project_id)
    return {"id": project.id, "deleted": project.deleted}


@router.patch("/{project_id}/approved_fields")
def edit_approved_fields(
    project_id: int,
    body: ListChanges,
    requester: Requester = Depends(get_requester),
    services: Services = Depends(get_services),
):
    return services.study_core.edit_project_approved_fields(requester, project_id, body.add, body.remove)


@router.get("/{project_id}/summary")
def project_summary(
    project_id: int,
    requester: Requester = Depends(get_requester),
    services: Services = Depends(get_services),
):
    return services.data_core.project_summary(requester, project_id)
