"""Bulk import of spreadsheet rows: insert members, then infer couples and parents."""

import logging
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
from sqlalchemy.exc import SQLAlchemyError

from config import Settings, settings as default_settings
from member_index import MemberIndex
from member_store import MemberStore, MemberValidationError
from relationships import RelationshipResolver
from spreadsheet import ImportRow, ImportRowError, parse_import_row

logger = logging.getLogger("silsilah.importer")

REPLACE = "replace"
MERGE = "merge"
IMPORT_MODES = (REPLACE, MERGE)


class FailedRow(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    position: int
    name: str | None = None
    reason: str


class ImportReport(BaseModel):
    """Outcome of one import run."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    mode: str
    total_rows: int = 0
    inserted: int = 0
    skipped_existing: int = 0
    processed: int = 0
    failed: list[FailedRow] = Field(default_factory=list)
    with_spouse: int = 0
    with_parent: int = 0
    diagnostics: list[str] = Field(default_factory=list)
    review: list[str] = Field(default_factory=list)


class ImportOrchestrator:
    """
    Runs an import batch phase by phase:

    1. parse every row
    2. clear (replace mode only), then insert bare members, indexing each right away
    3. link spouses
    4. link parents (needs the spouse links for generation 2)
    5. report

    Each phase finishes before the next starts. Each spouse pair and each
    parent link is committed on its own, so a failure never leaves a row half
    linked; rows already written are not rolled back.

    The mode must be chosen explicitly. "replace" deletes every member first
    and is deterministic for the same input. "merge" keeps existing members,
    reuses any whose name matches a row, and only inserts the rest.
    """

    def __init__(self, store: MemberStore, settings: Settings | None = None):
        self.store = store
        self.settings = settings or default_settings

    def run(self, records: list[dict[str, Any]], mode: str) -> ImportReport:
        if mode not in IMPORT_MODES:
            raise ValueError(f"Import mode must be one of {IMPORT_MODES}, got {mode!r}")

        report = ImportReport(mode=mode, total_rows=len(records))
        logger.info(f"Starting {mode} import of {len(records)} rows")

        # Every row is parsed before anything is written
        rows = self._parse_rows(records, report)

        if mode == REPLACE and rows:
            cleared = self.store.clear_members()
            logger.info(f"Cleared {cleared} existing members")
        elif mode == REPLACE:
            logger.warning("No valid rows to import, keeping existing members")

        index = MemberIndex(min_containment_ratio=self.settings.MIN_CONTAINMENT_RATIO)
        existing_ids = set()
        if mode == MERGE:
            for member in self.store.list_members(in_creation_order=True):
                index.insert(member)
                existing_ids.add(member.id)
            logger.info(f"Loaded {len(existing_ids)} existing members into the index")

        self._insert_members(rows, index, existing_ids, report)
        linked_rows = [row for row in rows if row.member_id is not None]

        resolver = RelationshipResolver(
            index,
            policy=self.settings.GENERATION2_POLICY,
            root_name=self.settings.ROOT_MEMBER_NAME,
        )
        spouse_of = self._link_spouses(linked_rows, index, resolver, report)
        self._link_parents(linked_rows, index, resolver, spouse_of, report)

        report.processed = report.inserted + report.skipped_existing
        report.diagnostics.extend(resolver.diagnostics)
        report.review.extend(resolver.review)

        logger.info(
            f"Import complete: {report.inserted} inserted, {report.skipped_existing} existing, "
            f"{len(report.failed)} failed, {report.with_spouse} with spouse, {report.with_parent} with parent"
        )
        if report.diagnostics:
            logger.warning(f"Import finished with {len(report.diagnostics)} diagnostic(s)")
        return report

    # ========================================================================
    # Phases
    # ========================================================================

    def _parse_rows(self, records: list[dict[str, Any]], report: ImportReport) -> list[ImportRow]:
        rows = []
        for position, record in enumerate(records):
            try:
                row, warnings = parse_import_row(record, position)
            except ImportRowError as e:
                logger.warning(str(e))
                report.failed.append(FailedRow(position=position, reason=str(e)))
                continue
            report.diagnostics.extend(warnings)
            rows.append(row)
        return rows

    def _insert_members(
        self,
        rows: list[ImportRow],
        index: MemberIndex,
        existing_ids: set[str],
        report: ImportReport,
    ) -> None:
        for row in rows:
            if existing_ids:
                existing_id = index.resolve_exact(row.name)
                if existing_id in existing_ids:
                    row.member_id = existing_id
                    report.skipped_existing += 1
                    logger.debug(f"Row {row.position + 1}: {row.name!r} already exists")
                    continue

            try:
                member = self.store.create_member(row.member_fields())
            except (SQLAlchemyError, MemberValidationError) as e:
                logger.error(f"Failed to insert row {row.position + 1} ({row.name!r}): {e}")
                report.failed.append(FailedRow(position=row.position, name=row.name, reason=str(e)))
                continue

            row.member_id = member.id
            index.insert(member)
            report.inserted += 1
            logger.debug(f"Inserted {row.name} (gen {row.generation}, {row.gender.value})")

    def _link_spouses(
        self,
        rows: list[ImportRow],
        index: MemberIndex,
        resolver: RelationshipResolver,
        report: ImportReport,
    ) -> dict[str, str]:
        """Persist spouse pairs. Returns member id -> spouse id for every stored couple."""
        spouse_of = {member.id: member.spouse_id for member in index if member.spouse_id}

        for member_id, spouse_id in resolver.resolve_spouses(rows):
            try:
                self.store.link_spouses(member_id, spouse_id)
            except (SQLAlchemyError, MemberValidationError) as e:
                logger.error(f"Failed to link spouses {member_id} and {spouse_id}: {e}")
                index.update(member_id, spouse_id=None)
                index.update(spouse_id, spouse_id=None)
                report.diagnostics.append(
                    f"could not save spouse link {index.get(member_id).name!r} <-> {index.get(spouse_id).name!r}: {e}"
                )
                continue
            spouse_of[member_id] = spouse_id
            spouse_of[spouse_id] = member_id
            report.with_spouse += 2

        logger.info(f"Linked {report.with_spouse // 2} couple(s)")
        return spouse_of

    def _link_parents(
        self,
        rows: list[ImportRow],
        index: MemberIndex,
        resolver: RelationshipResolver,
        spouse_of: dict[str, str],
        report: ImportReport,
    ) -> None:
        for member_id, parent_id in resolver.resolve_parents(rows, spouse_of):
            try:
                self.store.set_parent(member_id, parent_id)
            except (SQLAlchemyError, MemberValidationError) as e:
                logger.error(f"Failed to link parent {parent_id} for {member_id}: {e}")
                index.update(member_id, parent_id=None)
                report.diagnostics.append(
                    f"could not save parent {index.get(parent_id).name!r} for {index.get(member_id).name!r}: {e}"
                )
                continue
            report.with_parent += 1

        logger.info(f"Linked {report.with_parent} parent(s)")
