# SPDX-License-Identifier: Apache-2.0
"""SQLModel table definitions."""
from studyhub.models.data import DataRecord
from studyhub.models.field import FieldDataType, FieldEntry
from studyhub.models.role import Role
from studyhub.models.standardization import Standardization
from studyhub.models.study import DataVersion, Project, Study, StudyType

__all__ = [
    "DataRecord",
    "DataVersion",
    "FieldDataType",
    "FieldEntry",
    "Project",
    "Role",
    "Standardization",
    "Study",
    "StudyType",
]
