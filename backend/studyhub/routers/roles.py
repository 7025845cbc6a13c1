# SPDX-License-Identifier: Apache-2.0
"""Role endpoints: list, create, edit, delete."""
from __future__ import annotations

from fastapi import APIRouter, Depends, Query

from studyhub.dependencies import Services, get_requester, get_services
from studyhub.schemas import Requester, RoleCreate, RoleEdit

router = APIRouter(prefix="/roles", tags=["roles"])


@router.get("")
def list_roles(
    study_id: int = Query(...),
    project_id: int | None = Query(None),
    requester: Requester = Depends(get_requester),
    services: Services = Depends(get_services),
):
    return services.permission_core.list_roles(requester, study_id, project_id)


@router.post("")
def create_role(
    body: RoleCreate,
    requester: Requester = Depends(get_requester),
    services: Services = Depends(get_services),
):
    return services.permission_core.add_role(requester, body.study_id, body.project_id, body.name)


@router.patch("/{role_id}")
def edit_role(
    role_id: int,
    body: RoleEdit,
    requester: Requester = Depends(get_requester),
    services: Services = Depends(get_services),
):
    """Rename, and add/remove permissions and users. Removal wins over addition."""
    return services.permission_core.edit_role(
        requester,
        role_id,
        name=body.name,
        permission_changes=body.permission_changes.model_dump() if body.permission_changes else None,
        user_changes=body.user_changes.model_dump() if body.user_changes else None,
    )


@router.delete("/{role_id}")
def delete_role(
    role_id: int,
    requester: Requester = Depends(get_requester),
    services: Services = Depends(get_services),
):
    role = services.permission_core.remove_role(requester, role_id)
    return {"id": role.id, "deleted": role.deleted}
