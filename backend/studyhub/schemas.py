# SPDX-License-Identifier: Apache-2.0
"""Pydantic request/response schemas."""
from typing import Any

from pydantic import BaseModel, Field as PydanticField


class UserType:
    ADMIN = "ADMIN"
    STANDARD = "STANDARD"


class Requester(BaseModel):
    """Authenticated caller as handed over by the transport layer."""

    id: str
    type: str = UserType.STANDARD

    @property
    def is_admin(self) -> bool:
        return self.type == UserType.ADMIN


class StudyCreate(BaseModel):
    name: str = PydanticField(..., min_length=1, max_length=200)
    description: str = PydanticField("", max_length=2000)
    type: str = "ANY"


class StudyEdit(BaseModel):
    description: str = PydanticField("", max_length=2000)


class ProjectCreate(BaseModel):
    study_id: int
    name: str = PydanticField(..., min_length=1, max_length=200)
    approved_fields: list[int] = []


class ListChanges(BaseModel):
    add: list[Any] = []
    remove: list[Any] = []


class RoleCreate(BaseModel):
    study_id: int
    project_id: int | None = None
    name: str = PydanticField(..., min_length=1, max_length=200)


class RoleEdit(BaseModel):
    name: str | None = None
    permission_changes: ListChanges | None = None
    user_changes: ListChanges | None = None


class FieldInput(BaseModel):
    field_id: str | None = None
    field_name: str | None = None
    table_name: str | None = None
    data_type: str | None = None
    possible_values: list[dict[str, Any]] | None = None
    unit: str | None = None
    comments: str | None = None


class DataClip(BaseModel):
    subject_id: str
    visit_id: str
    field_id: str
    value: Any = None
    metadata: dict[str, Any] = {}


class DataDelete(BaseModel):
    subject_ids: list[str] = []
    visit_ids: list[str] = []
    field_ids: list[str] = []


class MetadataCondition(BaseModel):
    key: str
    op: str = "="
    parameter: Any = None


class CohortCriterion(BaseModel):
    field: str
    op: str = "="
    value: Any = None


class DataQuery(BaseModel):
    """Explicit query filters and output format for a data request."""

    data_requested: list[str] | None = None
    subject_ids: list[str] | None = None
    visit_ids: list[str] | None = None
    metadata: list[MetadataCondition] | None = None
    cohort: list[list[CohortCriterion]] | None = None
    format: str = "raw"


class DataRequest(BaseModel):
    query: DataQuery = PydanticField(default_factory=DataQuery)
    project_id: int | None = None
    version_id: str | None = None
    live: bool = False


class DataVersionCreate(BaseModel):
    version: str
    tag: str | None = None


class StandardizationCreate(BaseModel):
    type: str
    field: list[str]
    field_id: str
    rules: list[dict[str, Any]] = []
