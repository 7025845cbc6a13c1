# SPDX-License-Identifier: Apache-2.0
"""Field dictionary: catalogue dedup, validation and live-entry writes."""
from datetime import datetime, timedelta

import pytest

from conftest import add_fields, grant, upload
from studyhub.core.exceptions import NoPermissionError, NotFoundError
from studyhub.database import read_scope, session_scope
from studyhub.models import DataVersion, FieldEntry
from studyhub.services.field_service import validate_and_generate_field_entry, validate_value
from studyhub.services.permission_service import PermissionSet

T0 = datetime(2020, 1, 1)


def _seed_version(engine, study_id, position=0):
    with session_scope(engine) as session:
        version = DataVersion(study_id=study_id, position=position, version=f"1.{position}")
        session.add(version)
        session.flush()
        return version.id


def _add_entry(engine, study_id, field_id, version_id, seconds, deleted=False, name=None):
    with session_scope(engine) as session:
        entry = FieldEntry(
            study_id=study_id,
            field_id=field_id,
            field_name=name or field_id,
            data_version=version_id,
            date_added=T0 + timedelta(seconds=seconds),
            date_deleted=T0 + timedelta(seconds=seconds) if deleted else None,
        )
        session.add(entry)
        session.flush()
        return entry.id


def _fields(services, study_id, versions, **kwargs):
    with read_scope(services.ledger.engine) as session:
        return services.field_core.fields_of_study(session, study_id, versions, **kwargs)


def test_scenario_a_live_entry_not_visible(services, study):
    engine = services.ledger.engine
    v0 = _seed_version(engine, study.id)
    _add_entry(engine, study.id, "F1", None, 100)
    frozen = _add_entry(engine, study.id, "F1", v0, 50)
    assert [f.id for f in _fields(services, study.id, [v0])] == [frozen]


def test_latest_date_added_wins(services, study):
    engine = services.ledger.engine
    v0 = _seed_version(engine, study.id)
    v1 = _seed_version(engine, study.id, 1)
    _add_entry(engine, study.id, "F1", v1, 50)
    newer = _add_entry(engine, study.id, "F1", v0, 100)
    result = _fields(services, study.id, [v0, v1])
    assert [f.id for f in result] == [newer]


def test_tie_goes_to_last_inserted(services, study):
    engine = services.ledger.engine
    v0 = _seed_version(engine, study.id)
    _add_entry(engine, study.id, "F1", v0, 10, name="first")
    second = _add_entry(engine, study.id, "F1", v0, 10, name="second")
    assert [f.id for f in _fields(services, study.id, [v0])] == [second]


def test_deleted_entries_are_left_out_before_ranking(services, study):
    engine = services.ledger.engine
    v0 = _seed_version(engine, study.id)
    v1 = _seed_version(engine, study.id, 1)
    older = _add_entry(engine, study.id, "F1", v0, 10)
    _add_entry(engine, study.id, "F1", v1, 20, deleted=True)
    _add_entry(engine, study.id, "F2", v0, 10)
    assert [f.id for f in _fields(services, study.id, [v0, v1]) if f.field_id == "F1"] == [older]
    assert [f.field_id for f in _fields(services, study.id, [v0, v1])] == ["F1", "F2"]


def test_winning_tombstone_hides_field_for_writes(services, study):
    engine = services.ledger.engine
    v0 = _seed_version(engine, study.id)
    v1 = _seed_version(engine, study.id, 1)
    _add_entry(engine, study.id, "F1", v0, 10)
    _add_entry(engine, study.id, "F1", v1, 20, deleted=True)
    _add_entry(engine, study.id, "F2", v0, 10)
    assert [f.field_id for f in _fields(services, study.id, [v0, v1], tombstones_hide=True)] == ["F2"]


def test_sorted_by_field_id_and_filtered_by_pattern(services, study):
    engine = services.ledger.engine
    v0 = _seed_version(engine, study.id)
    for field_id in ["B1", "A2", "A1"]:
        _add_entry(engine, study.id, field_id, v0, 1)
    assert [f.field_id for f in _fields(services, study.id, [v0])] == ["A1", "A2", "B1"]
    permission = PermissionSet.build([".*"], [".*"], ["^A1$", "^B.*"])
    assert [f.field_id for f in _fields(services, study.id, [v0], permission=permission)] == ["A1", "B1"]


def test_validate_field_entry_collects_errors():
    entry, errors = validate_and_generate_field_entry({"field_id": "F1", "data_type": "colour"})
    assert entry["field_id"] == "F1"
    assert len(errors) == 2
    _, errors = validate_and_generate_field_entry({"field_id": "F1", "field_name": "n", "data_type": "cat"})
    assert errors == ["F1-n: possible values can't be empty if data type is categorical."]
    entry, errors = validate_and_generate_field_entry({
        "field_id": "F1",
        "field_name": "n",
        "data_type": "cat",
        "possible_values": [{"code": 1, "description": "yes"}],
    })
    assert errors == []
    assert entry["possible_values"] == [{"code": "1", "description": "yes"}]


@pytest.mark.parametrize("data_type,value,ok", [
    ("int", "42", True),
    ("int", "4.2", False),
    ("dec", "-4.2", True),
    ("dec", "abc", False),
    ("bool", "True", True),
    ("bool", "yes", False),
    ("date", "2021-03-04", True),
    ("date", "2021-03-04T10:00:00Z", True),
    ("date", "04/03/2021", False),
    ("str", "anything", True),
    ("cat", "1", True),
    ("cat", "3", False),
])
def test_validate_value(data_type, value, ok):
    field = FieldEntry(
        study_id=1, field_id="F", data_type=data_type,
        possible_values=[{"code": "1", "description": "one"}],
    )
    assert (validate_value(field, value) is None) == ok


def test_create_new_fields_reports_and_skips(services, admin, study):
    errors = add_fields(services, admin, study.id, [("A1", "int"), ("A1", "str"), ("B1", "colour")])
    assert [e["code"] for e in errors] == ["CLIENT_MALFORMED_INPUT", "CLIENT_MALFORMED_INPUT"]
    fields = services.data_core.get_study_fields(admin, study.id, live=True)
    assert [(f.field_id, f.data_type) for f in fields] == [("A1", "int")]


def test_create_new_fields_checks_each_field_permission(services, admin, study, alice):
    grant(services, admin, study.id, "alice", ['study.data.write {"fieldIds": ["^A.*"], "live": "include"}'])
    errors = add_fields(services, alice, study.id, [("A1", "int"), ("B1", "int")])
    assert errors == [{"code": "NO_PERMISSION_ERROR", "description": "Field B1: no permission to create."}]


def test_recreating_a_field_updates_the_live_entry(services, admin, study):
    add_fields(services, admin, study.id, [("A1", "int")])
    add_fields(services, admin, study.id, [("A1", "dec")])
    with read_scope(services.ledger.engine) as session:
        live = services.field_core.live_entry(session, study.id, "A1")
        assert live.data_type == "dec"
        assert len(_fields(services, study.id, [None])) == 1


def test_edit_field_is_admin_only(services, admin, study, alice):
    add_fields(services, admin, study.id, [("A1", "int")])
    with pytest.raises(NoPermissionError):
        services.data_core.edit_field(alice, study.id, "A1", None)


def test_edit_never_touches_frozen_entry(services, admin, frozen_study):
    from studyhub.schemas import FieldInput

    edited = services.data_core.edit_field(admin, frozen_study.id, "A1", FieldInput(unit="kg"))
    assert edited.data_version is None
    frozen = services.data_core.get_study_fields(admin, frozen_study.id)
    assert [f.unit for f in frozen if f.field_id == "A1"] == [None]
    live = services.data_core.get_study_fields(admin, frozen_study.id, live=True)
    assert [f.unit for f in live if f.field_id == "A1"] == ["kg"]


def test_delete_field(services, admin, frozen_study):
    services.data_core.delete_field(admin, frozen_study.id, "B1")
    # the catalogue still lists the frozen definition of B1
    live = services.data_core.get_study_fields(admin, frozen_study.id, live=True)
    assert [(f.field_id, f.data_version is None) for f in live] == [("A1", False), ("A2", False), ("B1", False)]
    with pytest.raises(NotFoundError):
        services.data_core.delete_field(admin, frozen_study.id, "B1")
    errors = upload(services, admin, frozen_study.id, [("P1", "V2", "B1", "1.0")])
    assert errors == [{"code": "CLIENT_ACTION_ON_NON_EXISTENT_ENTRY", "description": "Field B1: Field Not found"}]
