"""Command-line bulk import of a member spreadsheet (.xlsx or .csv).

By default every existing member is deleted first and the file is imported
from scratch. Use --merge to keep existing members and add only new names.

    python import_members.py "daftar anggota.xlsx"
    python import_members.py new-rows.csv --merge
"""

import argparse
import logging
import sys
from pathlib import Path

from config import settings

logger = logging.getLogger("silsilah.cli")


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Import family members from an .xlsx or .csv file.")
    parser.add_argument(
        "file",
        type=Path,
        help=".xlsx workbook (first sheet) or CSV file with a header row (Nama Lengkap, Jenis Kelamin, ...)",
    )
    parser.add_argument("--merge", action="store_true", help="keep existing members instead of replacing them")
    parser.add_argument("--database-url", default=None, help=f"database URL (default: {settings.DATABASE_URL})")
    parser.add_argument("-v", "--verbose", action="store_true", help="log every row")
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else settings.LOG_LEVEL,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    from sqlalchemy.orm import sessionmaker

    from database import engine, init_db, make_engine
    from importer import MERGE, REPLACE, ImportOrchestrator
    from member_store import MemberStore
    from spreadsheet import SpreadsheetError, read_upload

    if not args.file.is_file():
        logger.error(f"File not found: {args.file}")
        return 2

    try:
        records = read_upload(args.file.name, args.file.read_bytes())
    except SpreadsheetError as e:
        logger.error(str(e))
        return 2
    logger.info(f"Read {len(records)} rows from {args.file.name}")
    if not records:
        logger.error("Nothing to import")
        return 1

    bind = make_engine(args.database_url) if args.database_url else engine
    init_db(bind)
    session = sessionmaker(bind=bind, autocommit=False, autoflush=False)()
    try:
        report = ImportOrchestrator(MemberStore(session), settings).run(
            records, MERGE if args.merge else REPLACE
        )
    finally:
        session.close()

    for message in report.diagnostics:
        logger.warning(message)
    for message in report.review:
        logger.info(f"Review: {message}")
    for failure in report.failed:
        logger.error(f"Failed row {failure.position + 1}: {failure.reason}")

    print("Summary:")
    print(f"   Rows read:      {report.total_rows}")
    print(f"   Inserted:       {report.inserted}")
    print(f"   Existing:       {report.skipped_existing}")
    print(f"   Failed:         {len(report.failed)}")
    print(f"   With spouse:    {report.with_spouse}")
    print(f"   With parent:    {report.with_parent}")
    return 0 if not report.failed else 1


def cli() -> None:
    sys.exit(main())


if __name__ == "__main__":
    cli()
