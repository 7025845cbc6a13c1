# SPDX-License-Identifier: Apache-2.0
"""Role-based permission resolution.

Roles carry permission strings ``<level>.<scope>.<operation>[ <matcher-json>]``.
Resolution folds every matching grant of every role that includes the user
into one PermissionSet. Composition is union only: there is no explicit deny,
so a broader grant anywhere always means broader effective access.
"""
from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from functools import cached_property
from typing import Any, Iterable, Mapping, Sequence

from sqlmodel import Session, col, select

from studyhub.config import ALL_ACCESS_PATTERN
from studyhub.core.exceptions import MalformedInputError, NoPermissionError, NotFoundError
from studyhub.core.patterns import compile_patterns, is_valid_pattern, matches_any
from studyhub.database import read_scope, session_scope
from studyhub.models import DataRecord, FieldEntry, Project, Role, Study
from studyhub.schemas import Requester

logger = logging.getLogger("studyhub")


class AtomicOperation(str, Enum):
    READ = "read"
    WRITE = "write"


class PermissionScope(str, Enum):
    OWN = "own"
    ROLE = "role"
    DATA = "data"


class LiveAccess(str, Enum):
    EXCLUDE = "exclude"
    INCLUDE = "include"
    ONLY = "only"


_PERMISSION_RE = re.compile(
    r"^(?P<level>study|project)\.(?P<scope>own|role|data)\.(?P<operation>read|write)(?:\s+(?P<matcher>\{.*\}))?$",
    re.DOTALL,
)
_MATCHER_KEYS = {"subjectIds", "visitIds", "fieldIds", "live"}


@dataclass(frozen=True)
class Grant:
    """One parsed permission string."""

    level: str
    scope: PermissionScope
    operation: AtomicOperation
    subject_ids: tuple[str, ...] = (ALL_ACCESS_PATTERN,)
    visit_ids: tuple[str, ...] = (ALL_ACCESS_PATTERN,)
    field_ids: tuple[str, ...] = (ALL_ACCESS_PATTERN,)
    live: LiveAccess = LiveAccess.EXCLUDE

    def satisfies(self, scope: PermissionScope, operation: AtomicOperation) -> bool:
        if self.scope != scope:
            return False
        return self.operation == operation or self.operation == AtomicOperation.WRITE

    @property
    def covers_versioned(self) -> bool:
        return self.live != LiveAccess.ONLY

    @property
    def covers_live(self) -> bool:
        return self.live != LiveAccess.EXCLUDE


def _pattern_list(matcher: Mapping[str, Any], key: str, token: str) -> tuple[str, ...]:
    value = matcher.get(key, [ALL_ACCESS_PATTERN])
    if not isinstance(value, list) or not all(isinstance(p, str) for p in value):
        raise MalformedInputError(f"Permission {token!r}: {key} must be a list of patterns.")
    for p in value:
        if not is_valid_pattern(p):
            raise MalformedInputError(f"Permission {token!r}: invalid pattern {p!r}.")
    return tuple(value)


def parse_permission(token: str) -> Grant:
    """Parse and validate one permission string."""
    m = _PERMISSION_RE.match(token.strip()) if isinstance(token, str) else None
    if not m:
        raise MalformedInputError(f"Unknown permission {token!r}.")
    scope = PermissionScope(m.group("scope"))
    operation = AtomicOperation(m.group("operation"))
    raw_matcher = m.group("matcher")
    if raw_matcher is None:
        return Grant(level=m.group("level"), scope=scope, operation=operation)
    if scope != PermissionScope.DATA:
        raise MalformedInputError(f"Permission {token!r}: only data permissions take a matcher.")
    try:
        matcher = json.loads(raw_matcher)
    except json.JSONDecodeError:
        raise MalformedInputError(f"Permission {token!r}: matcher is not valid JSON.")
    unknown = set(matcher) - _MATCHER_KEYS
    if unknown:
        raise MalformedInputError(f"Permission {token!r}: unknown matcher keys {sorted(unknown)}.")
    try:
        live = LiveAccess(matcher.get("live", LiveAccess.EXCLUDE.value))
    except ValueError:
        raise MalformedInputError(f"Permission {token!r}: live must be one of exclude, include, only.")
    return Grant(
        level=m.group("level"),
        scope=scope,
        operation=operation,
        subject_ids=_pattern_list(matcher, "subjectIds", token),
        visit_ids=_pattern_list(matcher, "visitIds", token),
        field_ids=_pattern_list(matcher, "fieldIds", token),
        live=live,
    )


def validate_role_permissions(tokens: Iterable[str], project_id: int | None) -> list[Grant]:
    """Parse tokens for a role; a project role only takes ``project.*`` entries and vice versa."""
    expected = "project" if project_id is not None else "study"
    grants = []
    for token in tokens:
        grant = parse_permission(token)
        if grant.level != expected:
            raise MalformedInputError(
                f"Permission {token!r} cannot be given to a {expected} role."
            )
        grants.append(grant)
    return grants


def _role_grants(role: Role) -> list[Grant]:
    grants = []
    for token in role.permissions or []:
        try:
            grants.append(parse_permission(token))
        except MalformedInputError:
            logger.warning("Ignoring unparsable permission %r on role %s", token, role.id)
    return grants


def _sub_filter_key(sub_filter: Sequence[Mapping[str, Any]]) -> str:
    return json.dumps(list(sub_filter), sort_keys=True, default=str)


@dataclass(frozen=True)
class PermissionSet:
    """Aggregated data grants of one or more roles (derived per request, never persisted).

    ``subject_ids``/``visit_ids``/``field_ids`` hold the patterns of every
    matching grant; the ``live_*`` lists only those of grants that reach live
    data, so a frozen-only grant never widens live access.
    """

    subject_ids: tuple[str, ...] = ()
    visit_ids: tuple[str, ...] = ()
    field_ids: tuple[str, ...] = ()
    match_objects: tuple[tuple[Mapping[str, Any], ...], ...] = ()
    has_versioned: bool = False
    is_admin: bool = False
    live_subject_ids: tuple[str, ...] = ()
    live_visit_ids: tuple[str, ...] = ()
    live_field_ids: tuple[str, ...] = ()

    @classmethod
    def all_access(cls) -> "PermissionSet":
        everything = (ALL_ACCESS_PATTERN,)
        return cls(
            subject_ids=everything,
            visit_ids=everything,
            field_ids=everything,
            has_versioned=True,
            is_admin=True,
            live_subject_ids=everything,
            live_visit_ids=everything,
            live_field_ids=everything,
        )

    @classmethod
    def build(
        cls,
        subject_ids: Iterable[str] = (),
        visit_ids: Iterable[str] = (),
        field_ids: Iterable[str] = (),
        match_objects: Iterable[Sequence[Mapping[str, Any]]] = (),
        has_versioned: bool = False,
        is_admin: bool = False,
        live_subject_ids: Iterable[str] = (),
        live_visit_ids: Iterable[str] = (),
        live_field_ids: Iterable[str] = (),
    ) -> "PermissionSet":
        """Canonical form: patterns de-duplicated and sorted, sub-filters likewise."""
        subs = {_sub_filter_key(s): tuple(s) for s in match_objects}
        return cls(
            subject_ids=tuple(sorted(set(subject_ids))),
            visit_ids=tuple(sorted(set(visit_ids))),
            field_ids=tuple(sorted(set(field_ids))),
            match_objects=tuple(subs[k] for k in sorted(subs)),
            has_versioned=has_versioned,
            is_admin=is_admin,
            live_subject_ids=tuple(sorted(set(live_subject_ids))),
            live_visit_ids=tuple(sorted(set(live_visit_ids))),
            live_field_ids=tuple(sorted(set(live_field_ids))),
        )

    @property
    def covers_live(self) -> bool:
        return self.is_admin or bool(self.live_field_ids)

    def live_view(self) -> "PermissionSet":
        """The live-capable part of this set, as plain patterns."""
        if self.is_admin:
            return self
        return PermissionSet.build(self.live_subject_ids, self.live_visit_ids, self.live_field_ids)

    @cached_property
    def subject_matchers(self):
        return compile_patterns(self.subject_ids)

    @cached_property
    def visit_matchers(self):
        return compile_patterns(self.visit_ids)

    @cached_property
    def field_matchers(self):
        return compile_patterns(self.field_ids)


def combine_multiple_permissions(sets: Iterable[PermissionSet | None]) -> PermissionSet | None:
    """Union of the given sets (most permissive wins). None inputs are ignored."""
    present = [s for s in sets if s is not None]
    if not present:
        return None
    if any(s.is_admin for s in present):
        return PermissionSet.all_access()
    return PermissionSet.build(
        subject_ids=[p for s in present for p in s.subject_ids],
        visit_ids=[p for s in present for p in s.visit_ids],
        field_ids=[p for s in present for p in s.field_ids],
        match_objects=[m for s in present for m in s.match_objects],
        has_versioned=any(s.has_versioned for s in present),
        live_subject_ids=[p for s in present for p in s.live_subject_ids],
        live_visit_ids=[p for s in present for p in s.live_visit_ids],
        live_field_ids=[p for s in present for p in s.live_field_ids],
    )


def check_data_entry_valid(
    permission: PermissionSet,
    field_id: str,
    subject_id: str | None = None,
    visit_id: str | None = None,
) -> bool:
    """A coordinate is valid only if every supplied dimension matches some pattern."""
    if permission.is_admin:
        return True
    if not matches_any(permission.field_matchers, field_id):
        return False
    if subject_id is not None and not matches_any(permission.subject_matchers, subject_id):
        return False
    if visit_id is not None and not matches_any(permission.visit_matchers, visit_id):
        return False
    return True


def role_tag(role_id: int) -> str:
    return f"role:{role_id}"


def _fold(roles: Iterable[Role], scope: PermissionScope, operation: AtomicOperation) -> PermissionSet | None:
    subjects: list[str] = []
    visits: list[str] = []
    fields: list[str] = []
    live_subjects: list[str] = []
    live_visits: list[str] = []
    live_fields: list[str] = []
    match_objects: list[tuple[dict, ...]] = []
    has_versioned = matched = False
    for role in roles:
        grants = [g for g in _role_grants(role) if g.satisfies(scope, operation)]
        if not grants:
            continue
        matched = True
        role_versioned = False
        for g in grants:
            subjects.extend(g.subject_ids)
            visits.extend(g.visit_ids)
            fields.extend(g.field_ids)
            role_versioned = role_versioned or g.covers_versioned
            if g.covers_live:
                live_subjects.extend(g.subject_ids)
                live_visits.extend(g.visit_ids)
                live_fields.extend(g.field_ids)
        if role_versioned and scope == PermissionScope.DATA:
            has_versioned = True
            match_objects.append(({"key": role_tag(role.id), "op": "=", "parameter": True},))
    if not matched:
        return None
    return PermissionSet.build(
        subjects,
        visits,
        fields,
        match_objects,
        has_versioned,
        live_subject_ids=live_subjects,
        live_visit_ids=live_visits,
        live_field_ids=live_fields,
    )


def _versioned_read_set(role: Role) -> PermissionSet | None:
    grants = [
        g for g in _role_grants(role)
        if g.satisfies(PermissionScope.DATA, AtomicOperation.READ) and g.covers_versioned
    ]
    if not grants:
        return None
    return PermissionSet.build(
        subject_ids=[p for g in grants for p in g.subject_ids],
        visit_ids=[p for g in grants for p in g.visit_ids],
        field_ids=[p for g in grants for p in g.field_ids],
        has_versioned=True,
    )


class PermissionCore:
    """Resolves grants and manages roles. Stateless: every call re-reads the role store."""

    def __init__(self, engine):
        self.engine = engine

    # resolution

    def active_roles(self, session: Session, study_id: int) -> list[Role]:
        return list(
            session.exec(select(Role).where(Role.study_id == study_id, col(Role.deleted).is_(None)))
        )

    def roles_of_user(self, session: Session, user_id: str, study_id: int, project_id: int | None = None) -> list[Role]:
        stmt = select(Role).where(Role.study_id == study_id, col(Role.deleted).is_(None))
        if project_id is None:
            stmt = stmt.where(col(Role.project_id).is_(None))
        else:
            stmt = stmt.where(Role.project_id == project_id)
        return [r for r in session.exec(stmt.order_by(Role.id)) if user_id in (r.users or [])]

    def resolve(
        self,
        session: Session,
        requester: Requester,
        study_id: int,
        project_id: int | None = None,
        operation: AtomicOperation = AtomicOperation.READ,
        scope: PermissionScope = PermissionScope.DATA,
    ) -> PermissionSet | None:
        """PermissionSet for the requester, or None when no grant applies."""
        if requester.is_admin:
            return PermissionSet.all_access()
        roles = self.roles_of_user(session, requester.id, study_id, project_id)
        if not roles:
            return None
        return _fold(roles, scope, operation)

    def user_has_data_permission(
        self,
        session: Session,
        operation: AtomicOperation,
        requester: Requester,
        study_id: int,
        project_id: int | None = None,
    ) -> PermissionSet | None:
        return self.resolve(session, requester, study_id, project_id, operation, PermissionScope.DATA)

    def user_has_management_permission(
        self,
        session: Session,
        scope: PermissionScope,
        operation: AtomicOperation,
        requester: Requester,
        study_id: int,
        project_id: int | None = None,
    ) -> bool:
        return self.resolve(session, requester, study_id, project_id, operation, scope) is not None

    # tagging of frozen data

    def tag_versioned_data(
        self,
        session: Session,
        study_id: int,
        roles: Iterable[Role] | None = None,
        version_id: str | None = None,
    ) -> int:
        """Write ``role:<id>`` metadata tags on versioned records and fields; returns rows touched."""
        roles = list(roles) if roles is not None else self.active_roles(session, study_id)
        role_sets = [(role_tag(r.id), _versioned_read_set(r)) for r in roles]
        if not role_sets:
            return 0
        record_stmt = select(DataRecord).where(DataRecord.study_id == study_id)
        field_stmt = select(FieldEntry).where(FieldEntry.study_id == study_id)
        if version_id is None:
            record_stmt = record_stmt.where(col(DataRecord.version_id).is_not(None))
            field_stmt = field_stmt.where(col(FieldEntry.data_version).is_not(None))
        else:
            record_stmt = record_stmt.where(DataRecord.version_id == version_id)
            field_stmt = field_stmt.where(FieldEntry.data_version == version_id)
        touched = 0
        for record in session.exec(record_stmt):
            tags = dict(record.metadata_ or {})
            for tag, pset in role_sets:
                tags[tag] = pset is not None and check_data_entry_valid(
                    pset, record.field_id, record.subject_id, record.visit_id
                )
            record.metadata_ = tags
            session.add(record)
            touched += 1
        for entry in session.exec(field_stmt):
            tags = dict(entry.metadata_ or {})
            for tag, pset in role_sets:
                tags[tag] = pset is not None and check_data_entry_valid(pset, entry.field_id)
            entry.metadata_ = tags
            session.add(entry)
            touched += 1
        return touched

    # role management

    def require_role_management(
        self,
        session: Session,
        requester: Requester,
        study_id: int,
        project_id: int | None = None,
        operation: AtomicOperation = AtomicOperation.WRITE,
    ) -> None:
        """Study-level ``role`` grant, or a project-level one for that project's roles."""
        if self.user_has_management_permission(session, PermissionScope.ROLE, operation, requester, study_id):
            return
        if project_id is not None and self.user_has_management_permission(
            session, PermissionScope.ROLE, operation, requester, study_id, project_id
        ):
            return
        raise NoPermissionError("No permission to manage roles of this study.")

    def add_role(self, requester: Requester, study_id: int, project_id: int | None, name: str) -> Role:
        with session_scope(self.engine) as session:
            study = session.get(Study, study_id)
            if not study or study.deleted is not None:
                raise NotFoundError("Study does not exist.")
            if project_id is not None:
                project = session.get(Project, project_id)
                if not project or project.deleted is not None or project.study_id != study_id:
                    raise NotFoundError("Project does not exist.")
            self.require_role_management(session, requester, study_id, project_id)
            role = Role(study_id=study_id, project_id=project_id, name=name, created_by=requester.id)
            session.add(role)
            session.flush()
            session.refresh(role)
            logger.info("Role %s created for study %s project %s", role.id, study_id, project_id)
            return role

    def list_roles(self, requester: Requester, study_id: int, project_id: int | None = None) -> list[Role]:
        """Roles of the study, or only those of ``project_id`` when given."""
        with read_scope(self.engine) as session:
            self.require_role_management(session, requester, study_id, project_id, AtomicOperation.READ)
            stmt = select(Role).where(Role.study_id == study_id, col(Role.deleted).is_(None))
            if project_id is not None:
                stmt = stmt.where(Role.project_id == project_id)
            return list(session.exec(stmt.order_by(Role.id)))

    def get_role(self, session: Session, role_id: int) -> Role:
        role = session.get(Role, role_id)
        if not role or role.deleted is not None:
            raise NotFoundError("Role does not exist.")
        return role

    def edit_role(
        self,
        requester: Requester,
        role_id: int,
        name: str | None = None,
        permission_changes: Mapping[str, list[str]] | None = None,
        user_changes: Mapping[str, list[str]] | None = None,
    ) -> Role:
        """Apply add/remove diffs (additions first, so removal wins); additions are validated against the role level."""
        with session_scope(self.engine) as session:
            role = self.get_role(session, role_id)
            self.require_role_management(session, requester, role.study_id, role.project_id)
            if name:
                role.name = name
            permissions_changed = False
            if permission_changes:
                to_add = permission_changes.get("add") or []
                validate_role_permissions(to_add, role.project_id)
                to_remove = set(permission_changes.get("remove") or [])
                current = list(role.permissions or [])
                current.extend(p for p in to_add if p not in current)
                current = [p for p in current if p not in to_remove]
                permissions_changed = current != list(role.permissions or [])
                role.permissions = current
            if user_changes:
                to_remove = set(user_changes.get("remove") or [])
                users = list(role.users or [])
                users.extend(u for u in user_changes.get("add") or [] if u not in users)
                role.users = [u for u in users if u not in to_remove]
            session.add(role)
            session.flush()
            if permissions_changed:
                touched = self.tag_versioned_data(session, role.study_id, roles=[role])
                logger.info("Role %s permissions changed; retagged %d versioned rows", role.id, touched)
            session.refresh(role)
            return role

    def remove_role(self, requester: Requester, role_id: int) -> Role:
        with session_scope(self.engine) as session:
            role = self.get_role(session, role_id)
            self.require_role_management(session, requester, role.study_id, role.project_id)
            role.deleted = datetime.utcnow()
            session.add(role)
            session.flush()
            session.refresh(role)
            logger.info("Role %s removed", role_id)
            return role

    def remove_roles_for(self, session: Session, study_id: int | None = None, project_id: int | None = None) -> int:
        """Soft-delete every live role of a study or a project inside the caller's transaction."""
        if study_id is None and project_id is None:
            raise MalformedInputError("Either study_id or project_id is required.")
        stmt = select(Role).where(col(Role.deleted).is_(None))
        if study_id is not None:
            stmt = stmt.where(Role.study_id == study_id)
        if project_id is not None:
            stmt = stmt.where(Role.project_id == project_id)
        now = datetime.utcnow()
        count = 0
        for role in session.exec(stmt):
            role.deleted = now
            session.add(role)
            count += 1
        return count
