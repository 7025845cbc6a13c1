# SPDX-License-Identifier: Apache-2.0
"""Service wiring and FastAPI dependencies."""
from __future__ import annotations

from dataclasses import dataclass

from fastapi import Header, Request

from studyhub.core.exceptions import MalformedInputError
from studyhub.schemas import Requester, UserType
from studyhub.services.data_service import DataCore
from studyhub.services.field_service import FieldCore
from studyhub.services.permission_service import PermissionCore
from studyhub.services.query_service import QueryPlanner
from studyhub.services.standardization_service import Standardizer
from studyhub.services.study_service import StudyCore
from studyhub.services.version_service import DataVersionLedger


@dataclass
class Services:
    """Stateless service instances, built once per application."""

    permission_core: PermissionCore
    field_core: FieldCore
    ledger: DataVersionLedger
    planner: QueryPlanner
    standardizer: Standardizer
    study_core: StudyCore
    data_core: DataCore


def build_services(engine) -> Services:
    permission_core = PermissionCore(engine)
    field_core = FieldCore()
    ledger = DataVersionLedger(engine, permission_core, field_core)
    planner = QueryPlanner()
    standardizer = Standardizer(engine, permission_core)
    study_core = StudyCore(engine, permission_core)
    data_core = DataCore(engine, permission_core, study_core, field_core, ledger, planner, standardizer)
    return Services(
        permission_core=permission_core,
        field_core=field_core,
        ledger=ledger,
        planner=planner,
        standardizer=standardizer,
        study_core=study_core,
        data_core=data_core,
    )


def get_services(request: Request) -> Services:
    return request.app.state.services


def get_requester(
    x_user_id: str = Header(..., min_length=1),
    x_user_type: str = Header(UserType.STANDARD),
) -> Requester:
    """Caller identity as set by the upstream authentication layer."""
    user_type = x_user_type.upper()
    if user_type not in (UserType.ADMIN, UserType.STANDARD):
        raise MalformedInputError(f"Unknown user type {x_user_type!r}.")
    return Requester(id=x_user_id, type=user_type)
