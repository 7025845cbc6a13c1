# SPDX-License-Identifier: Apache-2.0
"""Data version ledger: append-only list of frozen snapshots plus the current pointer."""
from __future__ import annotations

import logging
import re
import uuid
from datetime import datetime

from sqlmodel import Session, col, select

from studyhub.config import DATA_VERSION_PATTERN
from studyhub.core.exceptions import MalformedInputError, NotFoundError
from studyhub.database import session_scope
from studyhub.models import DataRecord, DataVersion, FieldEntry, Project, Study
from studyhub.services.field_service import FieldCore
from studyhub.services.permission_service import PermissionCore

logger = logging.getLogger("studyhub")


class DataVersionLedger:
    def __init__(self, engine, permission_core: PermissionCore, field_core: FieldCore):
        self.engine = engine
        self.permission_core = permission_core
        self.field_core = field_core
        self._version_re = re.compile(DATA_VERSION_PATTERN)

    def data_versions(self, session: Session, study_id: int) -> list[DataVersion]:
        """All versions of the study in ledger order."""
        return list(
            session.exec(
                select(DataVersion).where(DataVersion.study_id == study_id).order_by(DataVersion.position)
            )
        )

    def visible_versions(self, session: Session, study: Study) -> list[str]:
        """Ids of ``data_versions[0..current_data_version]``; empty when nothing is frozen yet."""
        if study.current_data_version < 0:
            return []
        return list(
            session.exec(
                select(DataVersion.id)
                .where(
                    DataVersion.study_id == study.id,
                    DataVersion.position <= study.current_data_version,
                )
                .order_by(DataVersion.position)
            )
        )

    def current_version(self, session: Session, study: Study) -> DataVersion | None:
        if study.current_data_version < 0:
            return None
        return session.exec(
            select(DataVersion).where(
                DataVersion.study_id == study.id,
                DataVersion.position == study.current_data_version,
            )
        ).first()

    def _live_study(self, session: Session, study_id: int) -> Study:
        study = session.get(Study, study_id)
        if not study or study.deleted is not None:
            raise NotFoundError("Study does not exist.")
        return study

    def create_new_data_version(self, study_id: int, version: str, tag: str | None = None) -> DataVersion:
        """Freeze all live records and field definitions of the study into a new version."""
        if not isinstance(version, str) or not self._version_re.match(version):
            raise MalformedInputError("Version must be of the form number.number.number, e.g. 1.2.")
        with session_scope(self.engine) as session:
            study = self._live_study(session, study_id)
            live_records = list(
                session.exec(
                    select(DataRecord).where(
                        DataRecord.study_id == study_id, col(DataRecord.version_id).is_(None)
                    )
                )
            )
            live_fields = list(
                session.exec(
                    select(FieldEntry).where(
                        FieldEntry.study_id == study_id, col(FieldEntry.data_version).is_(None)
                    )
                )
            )
            if not live_records and not live_fields:
                raise NotFoundError("Nothing to update.")
            position = len(self.data_versions(session, study_id))
            data_version = DataVersion(
                id=str(uuid.uuid4()),
                study_id=study_id,
                position=position,
                version=version,
                tag=tag,
            )
            session.add(data_version)
            for record in live_records:
                record.version_id = data_version.id
                session.add(record)
            for entry in live_fields:
                entry.data_version = data_version.id
                session.add(entry)
            session.flush()
            touched = self.permission_core.tag_versioned_data(session, study_id, version_id=data_version.id)
            study.current_data_version = position
            study.last_modified = datetime.utcnow()
            session.add(study)
            session.flush()
            session.refresh(data_version)
            logger.info(
                "Study %s frozen as version %s (%s): %d records, %d fields, %d rows tagged",
                study_id, version, data_version.id, len(live_records), len(live_fields), touched,
            )
            return data_version

    def set_data_version_as_current(self, study_id: int, data_version_id: str) -> Study:
        """Move the pointer to ``data_version_id`` and re-point project field approvals."""
        with session_scope(self.engine) as session:
            study = self._live_study(session, study_id)
            target = session.exec(
                select(DataVersion).where(
                    DataVersion.study_id == study_id, DataVersion.id == data_version_id
                )
            ).first()
            if target is None:
                raise MalformedInputError("Data version does not exist.")
            study.current_data_version = target.position
            study.last_modified = datetime.utcnow()
            session.add(study)
            session.flush()
            remapped = self.remap_approved_fields(session, study)
            logger.info(
                "Study %s current data version set to %s (position %d); %d projects remapped",
                study_id, data_version_id, target.position, remapped,
            )
            session.refresh(study)
            return study

    def remap_approved_fields(self, session: Session, study: Study) -> int:
        """Follow each approved field id into the now visible catalogue; drop ids with no counterpart."""
        visible = self.field_core.fields_of_study(session, study.id, self.visible_versions(session, study))
        by_field_id = {f.field_id: f.id for f in visible}
        projects = session.exec(
            select(Project).where(Project.study_id == study.id, col(Project.deleted).is_(None))
        )
        count = 0
        for project in projects:
            approved = list(project.approved_fields or [])
            if not approved:
                continue
            old_entries = session.exec(select(FieldEntry).where(col(FieldEntry.id).in_(approved)))
            replaced: list[int] = []
            for entry in old_entries:
                new_id = by_field_id.get(entry.field_id)
                if new_id is not None and new_id not in replaced:
                    replaced.append(new_id)
            project.approved_fields = sorted(replaced)
            project.last_modified = datetime.utcnow()
            session.add(project)
            count += 1
        return count
