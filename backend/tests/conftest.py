# SPDX-License-Identifier: Apache-2.0
"""pytest fixtures for backend tests."""
import os

os.environ.setdefault("DATABASE_URL", "sqlite://")

import pytest
from fastapi.testclient import TestClient
from sqlmodel import SQLModel

from studyhub.database import engine
from studyhub.dependencies import build_services
from studyhub.main import app
from studyhub.schemas import DataClip, FieldInput, Requester, UserType


@pytest.fixture(autouse=True)
def fresh_db():
    """Every test starts from empty tables."""
    SQLModel.metadata.drop_all(engine)
    SQLModel.metadata.create_all(engine)
    yield


@pytest.fixture
def client():
    """FastAPI test client."""
    return TestClient(app)


@pytest.fixture
def services():
    return build_services(engine)


@pytest.fixture
def admin():
    return Requester(id="admin", type=UserType.ADMIN)


@pytest.fixture
def alice():
    return Requester(id="alice")


@pytest.fixture
def bob():
    return Requester(id="bob")


@pytest.fixture
def study(services, admin):
    return services.study_core.create_new_study(admin, "Study A", "first study")


def add_fields(services, requester, study_id, specs):
    """specs: (field_id, data_type) pairs."""
    inputs = [
        FieldInput(field_id=field_id, field_name=f"{field_id} name", data_type=data_type)
        for field_id, data_type in specs
    ]
    return services.data_core.create_new_fields(requester, study_id, inputs)


def upload(services, requester, study_id, rows):
    """rows: (subject, visit, field, value) tuples."""
    clips = [DataClip(subject_id=s, visit_id=v, field_id=f, value=value) for s, v, f, value in rows]
    return services.data_core.upload_data(requester, study_id, clips)


def grant(services, admin, study_id, user_id, permissions, project_id=None):
    role = services.permission_core.add_role(admin, study_id, project_id, f"{user_id} role")
    return services.permission_core.edit_role(
        admin,
        role.id,
        permission_changes={"add": permissions, "remove": []},
        user_changes={"add": [user_id], "remove": []},
    )


@pytest.fixture
def frozen_study(services, admin, study):
    """Study with fields A1 (int), A2 (str), B1 (dec), data for P1, P2, P10 at V1, frozen as 1.0."""
    add_fields(services, admin, study.id, [("A1", "int"), ("A2", "str"), ("B1", "dec")])
    upload(services, admin, study.id, [
        ("P1", "V1", "A1", "70"),
        ("P1", "V1", "A2", "x"),
        ("P1", "V1", "B1", "1.5"),
        ("P2", "V1", "A1", "60"),
        ("P2", "V1", "B1", "2.5"),
        ("P10", "V1", "A1", "80"),
    ])
    services.ledger.create_new_data_version(study.id, "1.0", "first")
    return study
