"""Spreadsheet boundary: column layout, row parsing, workbook and CSV read/write."""

import io
import math
import os
from datetime import date, datetime
from typing import Any, Iterable

import pandas as pd
from openpyxl.utils import get_column_letter
from pydantic import BaseModel

from models import Gender

# ============================================================================
# Column layout
# ============================================================================

COL_NO = "No"
COL_NAME = "Nama Lengkap"
COL_GENDER = "Jenis Kelamin"
COL_BIRTH_DATE = "Tanggal Lahir"
COL_BIRTH_PLACE = "Tempat Lahir"
COL_GENERATION = "Generasi"
COL_PARENT = "Nama Orangtua"
COL_SPOUSE = "Nama Pasangan"
COL_JOB = "Pekerjaan"
COL_ADDRESS = "Alamat"
COL_PHONE = "No. Telepon"
COL_EDUCATION = "Pendidikan"
COL_NOTES = "Catatan"

COLUMNS = [
    COL_NO,
    COL_NAME,
    COL_GENDER,
    COL_BIRTH_DATE,
    COL_BIRTH_PLACE,
    COL_GENERATION,
    COL_PARENT,
    COL_SPOUSE,
    COL_JOB,
    COL_ADDRESS,
    COL_PHONE,
    COL_EDUCATION,
    COL_NOTES,
]

# Descriptive columns carried straight through to the member record
DESCRIPTIVE_COLUMNS = {
    COL_BIRTH_DATE: "birth_date",
    COL_BIRTH_PLACE: "birth_place",
    COL_JOB: "job",
    COL_ADDRESS: "address",
    COL_PHONE: "phone",
    COL_EDUCATION: "education",
    COL_NOTES: "notes",
}

MALE_TOKENS = ("laki-laki", "l", "pria")
FEMALE_TOKENS = ("perempuan", "p", "wanita")

GENDER_LABELS = {
    Gender.MALE.value: "Laki-laki",
    Gender.FEMALE.value: "Perempuan",
}


class ImportRowError(ValueError):
    """A spreadsheet row that cannot become a member (e.g. no name)."""

    def __init__(self, position: int, message: str):
        super().__init__(f"row {position + 1}: {message}")
        self.position = position
        self.reason = message


class ImportRow(BaseModel):
    """One parsed spreadsheet record. member_id is filled in once the member exists."""
    position: int
    name: str
    gender: Gender = Gender.MALE
    generation: int = 1
    parent_raw: str = ""
    spouse_raw: str = ""
    birth_date: str | None = None
    birth_place: str | None = None
    job: str | None = None
    address: str | None = None
    phone: str | None = None
    education: str | None = None
    notes: str | None = None
    member_id: str | None = None

    def member_fields(self) -> dict[str, Any]:
        """Fields for creating the bare member (no relationships)."""
        return {
            "name": self.name,
            "gender": self.gender.value,
            "generation": self.generation,
            "birth_date": self.birth_date,
            "birth_place": self.birth_place,
            "job": self.job,
            "address": self.address,
            "phone": self.phone,
            "education": self.education,
            "notes": self.notes,
        }


# ============================================================================
# Parsing
# ============================================================================

def _text(value: Any) -> str:
    """Raw cell value as stripped text ("" for empty cells)."""
    if value is None:
        return ""
    if isinstance(value, float):
        if math.isnan(value):
            return ""
        if value.is_integer():
            value = int(value)
    if isinstance(value, datetime):
        # Excel date cells come back as timestamps
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()
    return str(value).strip()


def parse_gender(raw: Any) -> tuple[Gender, str | None]:
    """
    Map a gender cell to a Gender.

    Returns (gender, warning). Unknown values fall back to MALE with a warning;
    an empty cell falls back silently.
    """
    token = _text(raw).lower()
    if token in FEMALE_TOKENS:
        return Gender.FEMALE, None
    if token in MALE_TOKENS or not token:
        return Gender.MALE, None
    return Gender.MALE, f"unrecognized gender {_text(raw)!r}, using Laki-laki"


def parse_generation(raw: Any) -> tuple[int, str | None]:
    """Parse a generation cell; anything that is not a positive integer becomes 1."""
    text = _text(raw)
    if not text:
        return 1, None
    try:
        generation = int(float(text))
    except (ValueError, OverflowError):
        return 1, f"invalid generation {text!r}, using 1"
    if generation < 1:
        return 1, f"invalid generation {text!r}, using 1"
    return generation, None


def parse_import_row(record: dict[str, Any], position: int) -> tuple[ImportRow, list[str]]:
    """
    Validate one named-field record and build an ImportRow.

    Returns the row and any non-fatal warnings. Raises ImportRowError when the
    row has no name.
    """
    name = _text(record.get(COL_NAME))
    if not name:
        raise ImportRowError(position, f"{COL_NAME} is required")

    warnings = []
    gender, gender_warning = parse_gender(record.get(COL_GENDER))
    generation, generation_warning = parse_generation(record.get(COL_GENERATION))
    for warning in (gender_warning, generation_warning):
        if warning:
            warnings.append(f"row {position + 1} ({name}): {warning}")

    descriptive = {
        field: (_text(record.get(column)) or None)
        for column, field in DESCRIPTIVE_COLUMNS.items()
    }

    row = ImportRow(
        position=position,
        name=name,
        gender=gender,
        generation=generation,
        parent_raw=_text(record.get(COL_PARENT)),
        spouse_raw=_text(record.get(COL_SPOUSE)),
        **descriptive,
    )
    return row, warnings


# ============================================================================
# Workbook and CSV read/write
# ============================================================================

XLSX_MEDIA_TYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"
CSV_MEDIA_TYPE = "text/csv"

MEMBERS_SHEET = "Anggota Keluarga"
TEMPLATE_SHEET = "Template Anggota"
INSTRUCTIONS_SHEET = "Petunjuk"

# Column widths (characters) in written workbooks
COLUMN_WIDTHS = {
    COL_NO: 5,
    COL_NAME: 30,
    COL_GENDER: 12,
    COL_BIRTH_DATE: 15,
    COL_BIRTH_PLACE: 20,
    COL_GENERATION: 10,
    COL_PARENT: 25,
    COL_SPOUSE: 25,
    COL_JOB: 25,
    COL_ADDRESS: 40,
    COL_PHONE: 15,
    COL_EDUCATION: 20,
    COL_NOTES: 30,
}
DEFAULT_COLUMN_WIDTH = 40


class SpreadsheetError(ValueError):
    """An uploaded file that cannot be read as a member spreadsheet."""


def _frame_records(frame: pd.DataFrame) -> list[dict[str, Any]]:
    """Rows of a frame as named-field records. Empty cells become None; blank rows are dropped."""
    frame = frame.rename(columns=lambda column: str(column).strip())
    frame = frame.astype(object).where(frame.notna(), None)
    return [
        record
        for record in frame.to_dict(orient="records")
        if any(_text(value) for value in record.values())
    ]


def decode_upload(content: bytes) -> str:
    """Decode uploaded CSV bytes, accepting an Excel BOM and falling back to latin-1."""
    try:
        return content.decode("utf-8-sig")
    except UnicodeDecodeError:
        return content.decode("latin-1")


def read_workbook_records(content: bytes) -> list[dict[str, Any]]:
    """Read the first sheet of an .xlsx workbook into records."""
    frame = pd.read_excel(io.BytesIO(content), sheet_name=0, dtype=object, engine="openpyxl")
    return _frame_records(frame)


def read_csv_records(text: str) -> list[dict[str, Any]]:
    """Read CSV text into records, skipping blank lines."""
    if not text.strip():
        return []
    frame = pd.read_csv(io.StringIO(text), dtype=str, keep_default_na=False)
    return _frame_records(frame)


def read_upload(filename: str, content: bytes) -> list[dict[str, Any]]:
    """
    Read an uploaded member file by its extension (.xlsx or .csv).

    Raises SpreadsheetError for other extensions or unreadable content.
    """
    suffix = os.path.splitext(filename or "")[1].lower()
    if suffix not in (".xlsx", ".csv"):
        raise SpreadsheetError(f"File must be an Excel workbook (.xlsx) or CSV file (.csv), got {filename!r}")
    try:
        if suffix == ".xlsx":
            return read_workbook_records(content)
        return read_csv_records(decode_upload(content))
    except Exception as e:
        raise SpreadsheetError(f"Failed to read {filename}: {e}") from e


def members_frame(records: Iterable[dict[str, Any]], columns: list[str] = COLUMNS) -> pd.DataFrame:
    """Records as a frame with exactly the given columns, in order."""
    return pd.DataFrame(list(records), columns=columns)


def write_workbook(sheets: dict[str, pd.DataFrame]) -> bytes:
    """Write one sheet per frame to .xlsx bytes, with readable column widths."""
    buffer = io.BytesIO()
    with pd.ExcelWriter(buffer, engine="openpyxl") as writer:
        for sheet_name, frame in sheets.items():
            frame.to_excel(writer, sheet_name=sheet_name, index=False)
            worksheet = writer.sheets[sheet_name]
            for position, column in enumerate(frame.columns, start=1):
                width = COLUMN_WIDTHS.get(column, DEFAULT_COLUMN_WIDTH)
                worksheet.column_dimensions[get_column_letter(position)].width = width
    return buffer.getvalue()


def write_csv(records: Iterable[dict[str, Any]], columns: list[str] = COLUMNS) -> str:
    """Write records to CSV text with a header row."""
    return members_frame(records, columns).to_csv(index=False)


def export_workbook(rows: list[dict[str, Any]]) -> bytes:
    return write_workbook({MEMBERS_SHEET: members_frame(rows)})


def template_workbook() -> bytes:
    """The import template: example rows plus a sheet of filling instructions."""
    return write_workbook({
        TEMPLATE_SHEET: members_frame(TEMPLATE_ROWS),
        INSTRUCTIONS_SHEET: pd.DataFrame(TEMPLATE_INSTRUCTIONS, columns=["Kolom", "Keterangan"]),
    })


# ============================================================================
# Export
# ============================================================================

def build_export_rows(members: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """
    Flatten serialized members into spreadsheet rows.

    Parent and spouse ids are replaced by the referenced member's name so the
    file can be re-imported.
    """
    names = {member["id"]: member["name"] for member in members}
    rows = []
    for number, member in enumerate(members, start=1):
        rows.append({
            COL_NO: number,
            COL_NAME: member["name"],
            COL_GENDER: GENDER_LABELS.get(member["gender"], GENDER_LABELS[Gender.MALE.value]),
            COL_BIRTH_DATE: member.get("birthDate") or "",
            COL_BIRTH_PLACE: member.get("birthPlace") or "",
            COL_GENERATION: member["generation"],
            COL_PARENT: names.get(member.get("parentId"), "") if member.get("parentId") else "",
            COL_SPOUSE: names.get(member.get("spouseId"), "") if member.get("spouseId") else "",
            COL_JOB: member.get("job") or "",
            COL_ADDRESS: member.get("address") or "",
            COL_PHONE: member.get("phone") or "",
            COL_EDUCATION: member.get("education") or "",
            COL_NOTES: member.get("notes") or "",
        })
    return rows


# Example rows for the downloadable import template
TEMPLATE_ROWS = [
    {
        COL_NO: 1,
        COL_NAME: "Mucksin",
        COL_GENDER: "Laki-laki",
        COL_BIRTH_DATE: "1950-01-15",
        COL_BIRTH_PLACE: "Jakarta",
        COL_GENERATION: 1,
        COL_PARENT: "",
        COL_SPOUSE: "Supiyah",
        COL_JOB: "Pensiunan",
        COL_ADDRESS: "Jl. Keluarga No. 1, Jakarta",
        COL_PHONE: "08123456789",
        COL_EDUCATION: "S1",
        COL_NOTES: "Kepala keluarga",
    },
    {
        COL_NO: 2,
        COL_NAME: "Supiyah",
        COL_GENDER: "Perempuan",
        COL_BIRTH_DATE: "1955-03-20",
        COL_BIRTH_PLACE: "Surabaya",
        COL_GENERATION: 1,
        COL_PARENT: "",
        COL_SPOUSE: "",
        COL_JOB: "Ibu Rumah Tangga",
        COL_ADDRESS: "Jl. Keluarga No. 1, Jakarta",
        COL_PHONE: "08123456790",
        COL_EDUCATION: "SMA",
        COL_NOTES: "Istri kepala keluarga",
    },
    {
        COL_NO: 3,
        COL_NAME: "Ahmad Susanto",
        COL_GENDER: "Laki-laki",
        COL_BIRTH_DATE: "1975-06-10",
        COL_BIRTH_PLACE: "Jakarta",
        COL_GENERATION: 2,
        COL_PARENT: "Mucksin",
        COL_SPOUSE: "Dewi Rahayu",
        COL_JOB: "Wiraswasta",
        COL_ADDRESS: "Jl. Merdeka No. 5, Bandung",
        COL_PHONE: "08123456791",
        COL_EDUCATION: "S2",
        COL_NOTES: "Anak pertama",
    },
    {
        COL_NO: 4,
        COL_NAME: "Dewi Rahayu",
        COL_GENDER: "Perempuan",
        COL_BIRTH_DATE: "1978-09-02",
        COL_BIRTH_PLACE: "Bandung",
        COL_GENERATION: 2,
        COL_PARENT: "",
        COL_SPOUSE: "",
        COL_JOB: "Guru",
        COL_ADDRESS: "Jl. Merdeka No. 5, Bandung",
        COL_PHONE: "08123456792",
        COL_EDUCATION: "S1",
        COL_NOTES: "Istri Ahmad Susanto",
    },
]

# Second sheet of the template workbook: what goes in each column
TEMPLATE_INSTRUCTIONS = [
    {"Kolom": COL_NO, "Keterangan": "Nomor urut (diabaikan saat import)"},
    {"Kolom": COL_NAME, "Keterangan": "Nama lengkap anggota keluarga (WAJIB DIISI)"},
    {"Kolom": COL_GENDER, "Keterangan": "Laki-laki atau Perempuan (L/P juga diterima)"},
    {"Kolom": COL_BIRTH_DATE, "Keterangan": "Format: YYYY-MM-DD (contoh: 1990-05-15)"},
    {"Kolom": COL_BIRTH_PLACE, "Keterangan": "Kota/kabupaten tempat lahir"},
    {"Kolom": COL_GENERATION, "Keterangan": "Angka generasi (1, 2, 3, dst). Generasi 1 = kepala keluarga"},
    {"Kolom": COL_PARENT, "Keterangan": "Nama orangtua dari daftar anggota; dua nama dipisah ' - '"},
    {"Kolom": COL_SPOUSE, "Keterangan": "Nama pasangan dari daftar anggota; cukup diisi di salah satu pihak"},
    {"Kolom": COL_JOB, "Keterangan": "Pekerjaan saat ini"},
    {"Kolom": COL_ADDRESS, "Keterangan": "Alamat lengkap saat ini"},
    {"Kolom": COL_PHONE, "Keterangan": "Nomor telepon/HP"},
    {"Kolom": COL_EDUCATION, "Keterangan": "Pendidikan terakhir"},
    {"Kolom": COL_NOTES, "Keterangan": "Catatan tambahan"},
]
