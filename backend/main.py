"""Silsilah - family tree records backend.

FastAPI server for member records, the couple-aware family tree, and
spreadsheet import/export.
"""

import logging
import threading
from contextlib import asynccontextmanager, contextmanager
from datetime import date, datetime, timezone

from config import settings

# Configure logging
logging.basicConfig(
    level=settings.LOG_LEVEL,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("silsilah")

from fastapi import Depends, FastAPI, File, HTTPException, Query, Response, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
from sqlalchemy.orm import Session

from database import get_db, init_db
from family_tree import TreeIntegrityError, build_forest, calculate_family_stats, iter_tree, validate_tree
from importer import MERGE, ImportOrchestrator, ImportReport
from member_store import MemberNotFoundError, MemberStore, MemberValidationError
from models import Gender, get_member_data
from spreadsheet import (
    CSV_MEDIA_TYPE,
    TEMPLATE_ROWS,
    XLSX_MEDIA_TYPE,
    SpreadsheetError,
    build_export_rows,
    export_workbook,
    read_upload,
    template_workbook,
    write_csv,
)

# One bulk write (import, restore, reset) at a time per process
import_lock = threading.Lock()

BACKUP_VERSION = "1.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create tables on startup."""
    logger.info(f"Using database {settings.DATABASE_URL}")
    init_db()
    yield


app = FastAPI(
    title="Silsilah",
    description="Family member records and couple-aware family tree",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Request/Response models

class MemberFields(BaseModel):
    """Member fields accepted from the admin form (camelCase JSON)."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    name: str | None = None
    gender: Gender | None = None
    generation: int | None = Field(default=None, ge=1)
    parent_id: str | None = None
    spouse_id: str | None = None
    birth_date: str | None = None
    birth_place: str | None = None
    photo: str | None = None
    job: str | None = None
    address: str | None = None
    phone: str | None = None
    education: str | None = None
    notes: str | None = None
    is_active: bool | None = None


class MemberCreate(MemberFields):
    name: str
    gender: Gender


class ImportRequest(BaseModel):
    """Rows keyed by spreadsheet column name (Nama Lengkap, Jenis Kelamin, ...)."""
    rows: list[dict]


class BackupData(BaseModel):
    members: list[dict]


class RestoreRequest(BaseModel):
    """A document produced by GET /database/backup."""
    version: str | None = None
    data: BackupData


def get_store(db: Session = Depends(get_db)) -> MemberStore:
    return MemberStore(db)


def _member_detail(store: MemberStore, member) -> dict:
    data = get_member_data(member)
    parent = store.get_member(member.parent_id) if member.parent_id else None
    spouse = store.get_member(member.spouse_id) if member.spouse_id else None
    data["parent"] = get_member_data(parent) if parent else None
    data["spouse"] = get_member_data(spouse) if spouse else None
    data["children"] = [get_member_data(child) for child in store.get_children(member.id)]
    return data


@contextmanager
def bulk_write(action: str):
    """Hold the process-wide bulk write lock, or fail with 409 if it is taken."""
    if not import_lock.acquire(blocking=False):
        logger.warning(f"Rejected {action}: another import, restore or reset is running")
        raise HTTPException(status_code=409, detail="Another import is already running")
    try:
        yield
    finally:
        import_lock.release()


def _run_import(store: MemberStore, records: list[dict], mode: str) -> ImportReport:
    if not records:
        raise HTTPException(status_code=400, detail="File is empty or has no rows")
    with bulk_write("import"):
        return ImportOrchestrator(store, settings).run(records, mode)


def _download(content, media_type: str, filename: str) -> Response:
    return Response(
        content=content,
        media_type=media_type,
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


# Endpoints

@app.get("/health")
def health_check(store: MemberStore = Depends(get_store)):
    """Health check endpoint."""
    logger.debug("Health check requested")
    return {"status": "healthy", "members": store.count_members()}


@app.get("/members")
def list_members(store: MemberStore = Depends(get_store)):
    """All members, ordered by generation then name."""
    members = [get_member_data(m) for m in store.list_members()]
    logger.info(f"Returning {len(members)} members")
    return {"members": members}


@app.get("/members/export")
def export_members(
    format: str = Query(default="xlsx", pattern="^(xlsx|csv)$"),
    store: MemberStore = Depends(get_store),
):
    """Download all members as a workbook (or CSV), with parent and spouse given by name."""
    members = [get_member_data(m) for m in store.list_members()]
    rows = build_export_rows(members)
    filename = f"anggota-keluarga-{date.today().isoformat()}.{format}"
    logger.info(f"Exporting {len(members)} members to {filename}")
    if format == "csv":
        return _download(write_csv(rows), CSV_MEDIA_TYPE, filename)
    return _download(export_workbook(rows), XLSX_MEDIA_TYPE, filename)


@app.get("/members/template")
def import_template(format: str = Query(default="xlsx", pattern="^(xlsx|csv)$")):
    """Download an example spreadsheet to fill in for import."""
    filename = f"template-anggota-keluarga.{format}"
    if format == "csv":
        return _download(write_csv(TEMPLATE_ROWS), CSV_MEDIA_TYPE, filename)
    return _download(template_workbook(), XLSX_MEDIA_TYPE, filename)


@app.get("/members/{member_id}")
def get_member(member_id: str, store: MemberStore = Depends(get_store)):
    """One member with parent, spouse and children."""
    member = store.get_member(member_id)
    if member is None:
        raise HTTPException(status_code=404, detail=f"Member {member_id} not found")
    return _member_detail(store, member)


@app.post("/members", status_code=201)
def create_member(payload: MemberCreate, store: MemberStore = Depends(get_store)):
    """Create a member from the admin form."""
    fields = payload.model_dump(exclude_none=True)
    try:
        member = store.create_member(fields)
    except MemberValidationError as e:
        logger.warning(f"Rejected new member: {e}")
        raise HTTPException(status_code=400, detail=str(e))
    logger.info(f"Created member {member.name!r} ({member.id})")
    return _member_detail(store, member)


@app.put("/members/{member_id}")
def update_member(member_id: str, payload: MemberFields, store: MemberStore = Depends(get_store)):
    """Update a member. Only fields present in the body change; null clears parent/spouse."""
    fields = payload.model_dump(exclude_unset=True)
    try:
        member = store.update_member(member_id, fields)
    except MemberNotFoundError:
        raise HTTPException(status_code=404, detail=f"Member {member_id} not found")
    except MemberValidationError as e:
        logger.warning(f"Rejected update of {member_id}: {e}")
        raise HTTPException(status_code=400, detail=str(e))
    logger.info(f"Updated member {member.name!r} ({member.id})")
    return _member_detail(store, member)


@app.delete("/members/{member_id}")
def delete_member(member_id: str, store: MemberStore = Depends(get_store)):
    """Delete a member; the spouse is unlinked and children lose their parent."""
    try:
        store.delete_member(member_id)
    except MemberNotFoundError:
        raise HTTPException(status_code=404, detail=f"Member {member_id} not found")
    return {"success": True}


@app.get("/family")
def get_family(store: MemberStore = Depends(get_store)):
    """Members, the family tree, headline stats and data warnings."""
    members = [get_member_data(m) for m in store.list_members()]
    by_id = {m["id"]: m for m in members}
    with_spouse = [{**m, "spouse": by_id.get(m["spouseId"])} for m in members]

    try:
        forest = build_forest(members)
    except TreeIntegrityError as e:
        logger.error(f"Family tree integrity error: {e}")
        raise HTTPException(status_code=409, detail=str(e))

    warnings = validate_tree(members)
    if warnings:
        logger.warning(f"Family tree has {len(warnings)} warning(s)")

    return {
        "members": with_spouse,
        "rootMembers": forest,
        "stats": calculate_family_stats(members),
        "warnings": warnings,
    }


@app.get("/tree")
def get_tree(store: MemberStore = Depends(get_store)):
    """The family tree forest only."""
    members = [get_member_data(m) for m in store.list_members()]
    try:
        forest = build_forest(members)
    except TreeIntegrityError as e:
        logger.error(f"Family tree integrity error: {e}")
        raise HTTPException(status_code=409, detail=str(e))
    logger.debug(f"Built tree with {len(forest)} root(s) and {sum(1 for _ in iter_tree(forest))} node(s)")
    return {"tree": forest}


@app.post("/members/import", response_model=ImportReport)
def import_members(
    payload: ImportRequest,
    mode: str = Query(default=MERGE, pattern="^(merge|replace)$"),
    store: MemberStore = Depends(get_store),
):
    """Import rows given as JSON objects keyed by spreadsheet column name."""
    logger.info(f"Received {len(payload.rows)} rows for {mode} import")
    return _run_import(store, payload.rows, mode)


@app.post("/members/import/upload", response_model=ImportReport)
def upload_members(
    file: UploadFile = File(...),
    mode: str = Query(default=MERGE, pattern="^(merge|replace)$"),
    store: MemberStore = Depends(get_store),
):
    """Import members from an uploaded Excel workbook (.xlsx, first sheet) or CSV file."""
    logger.info(f"Received member file upload: {file.filename}")

    content = file.file.read()
    logger.debug(f"Read {len(content)} bytes from file")
    try:
        records = read_upload(file.filename, content)
    except SpreadsheetError as e:
        logger.warning(str(e))
        raise HTTPException(status_code=400, detail=str(e))
    return _run_import(store, records, mode)


@app.get("/database/backup")
def backup_database(store: MemberStore = Depends(get_store)):
    """Every member as JSON, with ids and links, for restoring later."""
    members = store.backup_members()
    logger.info(f"Backing up {len(members)} members")
    return {
        "version": BACKUP_VERSION,
        "exportedAt": datetime.now(timezone.utc).isoformat(),
        "appName": settings.PROJECT_NAME,
        "data": {"members": members},
    }


@app.post("/database/restore")
def restore_database(payload: RestoreRequest, store: MemberStore = Depends(get_store)):
    """Replace every member with the contents of a backup, keeping ids and links."""
    with bulk_write("restore"):
        try:
            restored = store.restore_members(payload.data.members)
        except MemberValidationError as e:
            logger.warning(f"Rejected restore: {e}")
            raise HTTPException(status_code=400, detail=str(e))
    return {"success": True, "stats": {"members": restored}}


@app.post("/database/reset")
def reset_database(store: MemberStore = Depends(get_store)):
    """Delete every member."""
    with bulk_write("reset"):
        deleted = store.clear_members()
    logger.warning(f"Database reset: deleted {deleted} members")
    return {"success": True, "deleted": deleted}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
