# SPDX-License-Identifier: Apache-2.0
"""Query planning, merge precedence and cohort filtering."""
from datetime import datetime, timedelta
from types import SimpleNamespace

import pytest

from studyhub.core.exceptions import MalformedInputError
from studyhub.database import read_scope, session_scope
from studyhub.models import DataRecord, DataVersion, FieldEntry
from studyhub.schemas import DataQuery
from studyhub.services.permission_service import PermissionSet
from studyhub.services.query_service import (
    AccessMode,
    access_mode,
    apply_cohort,
    merge_records,
    redact_for_project,
)

T0 = datetime(2020, 1, 1)


def _record(subject, visit, field, value):
    return SimpleNamespace(subject_id=subject, visit_id=visit, field_id=field, value=value)


def test_merge_first_non_null_wins():
    rows = [
        _record("P1", "V1", "Weight", None),
        _record("P1", "V1", "Weight", "72"),
        _record("P1", "V1", "Weight", "70"),
        _record("P1", "V1", "Height", "180"),
    ]
    assert merge_records(rows) == {"P1": {"V1": {"Weight": "72", "Height": "180"}}}


def test_merge_keeps_field_when_all_values_null():
    assert merge_records([_record("P1", "V1", "A", None)]) == {"P1": {"V1": {"A": None}}}


def test_scenario_d_merge_follows_pinned_order():
    older = _record("P1", "V1", "Weight", "70")
    newer = _record("P1", "V1", "Weight", "72")
    assert merge_records([older, newer])["P1"]["V1"]["Weight"] == "70"
    assert merge_records([newer, older])["P1"]["V1"]["Weight"] == "72"


def test_access_mode():
    versioned = PermissionSet.build([".*"], [".*"], [".*"], has_versioned=True)
    live = PermissionSet.build(live_subject_ids=[".*"], live_visit_ids=[".*"], live_field_ids=[".*"])
    assert access_mode(PermissionSet.all_access(), live=True) == AccessMode.ADMIN
    assert access_mode(live, live=True) == AccessMode.LIVE
    assert access_mode(versioned, live=True) == AccessMode.VERSIONED
    assert access_mode(live) == AccessMode.VERSIONED


def _seed(engine, study_id, rows):
    """rows: (subject, visit, field, version, uploaded_seconds, value, metadata)."""
    with session_scope(engine) as session:
        for subject, visit, field, version, seconds, value, metadata in rows:
            session.add(DataRecord(
                study_id=study_id,
                subject_id=subject,
                visit_id=visit,
                field_id=field,
                version_id=version,
                uploaded_at=T0 + timedelta(seconds=seconds),
                value=value,
                metadata_=metadata,
            ))


def _versions(engine, study_id, count):
    ids = []
    with session_scope(engine) as session:
        for position in range(count):
            version = DataVersion(study_id=study_id, position=position, version=f"1.{position}")
            session.add(version)
            ids.append(version.id)
    return ids


def _run(services, study_id, versions, fields, permission=None, query=None, live=False):
    entries = [FieldEntry(study_id=study_id, field_id=f) for f in fields]
    stmt = services.planner.plan(
        study_id, query or DataQuery(), versions, entries, permission or PermissionSet.all_access(), live
    )
    with read_scope(services.ledger.engine) as session:
        return merge_records(session.exec(stmt))


def test_scenario_d_latest_upload_wins_within_version(services, study):
    engine = services.ledger.engine
    (v0,) = _versions(engine, study.id, 1)
    _seed(engine, study.id, [
        ("P1", "V1", "Weight", v0, 10, "70", {}),
        ("P1", "V1", "Weight", v0, 20, "72", {}),
    ])
    assert _run(services, study.id, [v0], ["Weight"]) == {"P1": {"V1": {"Weight": "72"}}}


def test_later_version_takes_precedence(services, study):
    engine = services.ledger.engine
    v0, v1 = _versions(engine, study.id, 2)
    _seed(engine, study.id, [
        ("P1", "V1", "Weight", v1, 10, "72", {}),
        ("P1", "V1", "Weight", v0, 20, "70", {}),
        ("P1", "V1", "Height", v0, 5, "180", {}),
    ])
    merged = _run(services, study.id, [v0, v1], ["Height", "Weight"])
    assert merged == {"P1": {"V1": {"Weight": "72", "Height": "180"}}}
    # with only v0 visible the older value comes back
    assert _run(services, study.id, [v0], ["Weight"]) == {"P1": {"V1": {"Weight": "70"}}}


def test_planning_is_deterministic(services, study):
    engine = services.ledger.engine
    v0, v1 = _versions(engine, study.id, 2)
    _seed(engine, study.id, [
        (f"P{n}", "V1", field, version, n, str(n), {})
        for n in range(6)
        for field in ("A", "B")
        for version in (v0, v1)
    ])
    first = _run(services, study.id, [v0, v1], ["A", "B"])
    assert first == _run(services, study.id, [v0, v1], ["A", "B"])
    assert len(first) == 6


def test_explicit_filters(services, study):
    engine = services.ledger.engine
    (v0,) = _versions(engine, study.id, 1)
    _seed(engine, study.id, [
        ("P1", "V1", "A", v0, 1, "1", {"site": "x", "score": 3}),
        ("P2", "V1", "A", v0, 1, "2", {"site": "y", "score": 7}),
        ("P2", "V2", "B", v0, 1, "3", {"site": "y", "score": 9}),
    ])
    query = DataQuery(subject_ids=["P2"], data_requested=["A"])
    assert _run(services, study.id, [v0], ["A", "B"], query=query) == {"P2": {"V1": {"A": "2"}}}
    query = DataQuery(metadata=[{"key": "score", "op": ">", "parameter": 5}])
    assert set(_run(services, study.id, [v0], ["A", "B"], query=query)["P2"]) == {"V1", "V2"}
    query = DataQuery(metadata=[{"key": "site", "parameter": "x"}])
    assert _run(services, study.id, [v0], ["A", "B"], query=query) == {"P1": {"V1": {"A": "1"}}}


def test_unknown_metadata_operator_is_malformed(services, study):
    query = DataQuery(metadata=[{"key": "site", "op": "~", "parameter": "x"}])
    with pytest.raises(MalformedInputError):
        _run(services, study.id, [], ["A"], query=query)


def test_versioned_predicate_uses_role_tags_and_explicit_filters_narrow(services, study):
    engine = services.ledger.engine
    (v0,) = _versions(engine, study.id, 1)
    _seed(engine, study.id, [
        ("P1", "V1", "A", v0, 1, "1", {"role:1": True, "site": "x"}),
        ("P2", "V1", "A", v0, 1, "2", {"role:1": False, "role:2": True, "site": "x"}),
        ("P3", "V1", "A", v0, 1, "3", {"site": "x"}),
        ("P4", "V1", "A", v0, 1, "4", {"role:1": True, "site": "y"}),
    ])
    permission = PermissionSet.build(
        [".*"], [".*"], [".*"],
        match_objects=[
            ({"key": "role:1", "op": "=", "parameter": True},),
            ({"key": "role:2", "op": "=", "parameter": True},),
        ],
        has_versioned=True,
    )
    assert set(_run(services, study.id, [v0], ["A"], permission)) == {"P1", "P2", "P4"}
    query = DataQuery(metadata=[{"key": "site", "parameter": "x"}])
    assert set(_run(services, study.id, [v0], ["A"], permission, query)) == {"P1", "P2"}
    nothing = PermissionSet.build([".*"], [".*"], [".*"])
    assert _run(services, study.id, [v0], ["A"], nothing) == {}


def test_live_mode_matches_patterns_on_live_rows_only(services, study):
    engine = services.ledger.engine
    (v0,) = _versions(engine, study.id, 1)
    _seed(engine, study.id, [
        ("P1", "V1", "A", None, 1, "live", {}),
        ("P10", "V1", "A", None, 1, "other", {}),
        ("P1", "V1", "A", v0, 1, "frozen", {}),
    ])
    # the frozen-only patterns cover P10 as well; live rows follow the live patterns alone
    permission = PermissionSet.build(
        [".*"], [".*"], [".*"],
        live_subject_ids=["^P1$"], live_visit_ids=[".*"], live_field_ids=[".*"],
    )
    assert _run(services, study.id, [None], ["A"], permission, live=True) == {"P1": {"V1": {"A": "live"}}}


def test_empty_catalogue_is_empty_result(services, study):
    engine = services.ledger.engine
    (v0,) = _versions(engine, study.id, 1)
    _seed(engine, study.id, [("P1", "V1", "A", v0, 1, "1", {})])
    assert _run(services, study.id, [v0], []) == {}


def test_cohort_or_of_and():
    merged = {
        "P1": {"V1": {"Age": "30", "Sex": "F"}},
        "P2": {"V1": {"Age": "50", "Sex": "M"}},
        "P3": {"V1": {"Age": "70", "Sex": "F"}, "V2": {"Sex": "F"}},
    }
    cohort = [
        [{"field": "Age", "op": ">", "value": 40}, {"field": "Sex", "op": "=", "value": "F"}],
        [{"field": "Age", "op": "<=", "value": "30"}],
    ]
    assert apply_cohort(merged, cohort) == {
        "P1": {"V1": {"Age": "30", "Sex": "F"}},
        "P3": {"V1": {"Age": "70", "Sex": "F"}},
    }
    assert apply_cohort(merged, [[{"field": "Age", "op": "exists"}]]).keys() == merged.keys()
    assert list(apply_cohort(merged, [[{"field": "Sex", "op": "in", "value": ["M"]}]])) == ["P2"]
    assert apply_cohort(merged, None) is merged
    with pytest.raises(MalformedInputError):
        apply_cohort(merged, [[{"field": "Age", "op": "~", "value": 1}]])


def test_redact_for_project():
    merged = {
        "P1": {"V1": {"A": "1", "B": "2"}},
        "P2": {"V1": {"B": "3"}},
        "P3": {"V1": {"A": "4"}},
    }
    project = SimpleNamespace(patient_mapping={"P1": "X7", "P2": "X3"})
    assert redact_for_project(merged, project, {"A"}) == {"X7": {"V1": {"A": "1"}}}
