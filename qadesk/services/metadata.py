"""Excel call-metadata import and the downloadable template.

Column headers are matched against declared alias tables after normalising
them (lower case, alphanumerics only). Four columns describe the file itself
(filename, language, version, call date); everything else is call metadata
mapped onto canonical field names, and columns nobody recognises are kept in
an ``extras`` bag under their original header.
"""
import logging
import re
import zipfile
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta
from io import BytesIO
from typing import Dict, Iterable, List, Optional, Tuple

import openpyxl
from openpyxl.styles import Font
from openpyxl.utils.exceptions import InvalidFileException

from ..errors import ValidationError
from ..models.audio_file import LANGUAGES

log = logging.getLogger(__name__)


class MetadataError(ValidationError):
    """The workbook cannot be used at all (as opposed to a bad row)."""


# canonical file column -> accepted header spellings (normalised)
FILE_COLUMN_ALIASES = OrderedDict([
    ("filename", ("filename", "file", "filenames", "audiofile", "audiofilename", "audioname",
                  "recording", "recordingname", "fname", "nameoffile")),
    ("language", ("language", "lang", "audiolanguage", "calllanguage")),
    ("version", ("version", "ver", "fileversion")),
    ("call_date", ("calldate", "date", "recordingdate", "dateofcall")),
])

# substring fallback for file columns when no header matches exactly
FILE_COLUMN_FRAGMENTS = OrderedDict([
    ("filename", ("file", "recording")),
    ("language", ("lang",)),
    ("version", ("version",)),
    ("call_date", ("date",)),
])

# CallMetadata attribute -> (json key, header spellings)
METADATA_ALIASES = OrderedDict([
    ("agent_id", ("agentId", ("agentid", "olmsid", "advisorid", "employeeid"))),
    ("agent_name", ("agentName", ("agentname", "name", "advisorname"))),
    ("pbx_id", ("pbxId", ("pbxid", "pbx"))),
    ("partner_name", ("partnerName", ("partnername", "partner", "vendor"))),
    ("customer_mobile", ("customerMobile", ("customermobile", "mobile", "customerphone", "phonenumber"))),
    ("call_duration", ("callDuration", ("callduration", "duration", "durationsec", "calllength"))),
    ("call_id", ("callId", ("callid", "interactionid"))),
    ("call_type", ("callType", ("calltype", "type"))),
    ("sub_type", ("subType", ("subtype",))),
    ("sub_sub_type", ("subSubType", ("subsubtype",))),
    ("voc", ("voc", ("voc", "voiceofcustomer", "sentiment"))),
    ("language_of_call", ("languageOfCall", ("languageofcall",))),
    ("user_role", ("userRole", ("userrole", "role"))),
    ("advisor_category", ("advisorCategory", ("advisorcategory", "category"))),
    ("campaign", ("campaign", ("campaign", "campaignname"))),
    ("business_segment", ("businessSegment", ("businesssegment", "segment"))),
    ("lob", ("lob", ("lob", "lineofbusiness"))),
    ("form_name", ("formName", ("formname", "form"))),
    ("audit_role", ("auditRole", ("auditrole",))),
])

DATE_FORMATS = ("%Y-%m-%d", "%Y/%m/%d", "%m/%d/%Y", "%m-%d-%Y", "%m.%d.%Y", "%m/%d/%y", "%m-%d-%y")
EXCEL_EPOCH = datetime(1899, 12, 30)


def normalize_header(value) -> str:
    return re.sub(r"[^a-z0-9]", "", str(value).lower())


@dataclass
class CallMetadata:
    agent_id: Optional[str] = None
    agent_name: Optional[str] = None
    pbx_id: Optional[str] = None
    partner_name: Optional[str] = None
    customer_mobile: Optional[str] = None
    call_duration: Optional[str] = None
    call_id: Optional[str] = None
    call_type: Optional[str] = None
    sub_type: Optional[str] = None
    sub_sub_type: Optional[str] = None
    voc: Optional[str] = None
    language_of_call: Optional[str] = None
    user_role: Optional[str] = None
    advisor_category: Optional[str] = None
    campaign: Optional[str] = None
    business_segment: Optional[str] = None
    lob: Optional[str] = None
    form_name: Optional[str] = None
    audit_role: Optional[str] = None
    extras: Dict[str, str] = field(default_factory=dict)

    def to_json(self) -> Dict[str, str]:
        """Canonical camelCase keys, empty fields left out."""
        out = {}
        for attr, (key, _) in METADATA_ALIASES.items():
            value = getattr(self, attr)
            if value is not None:
                out[key] = value
        return out

    @classmethod
    def from_json(cls, data: Optional[dict], extras: Optional[dict] = None) -> "CallMetadata":
        data = data or {}
        values = {attr: data.get(key) for attr, (key, _) in METADATA_ALIASES.items()}
        return cls(extras=dict(extras or {}), **values)


@dataclass
class AudioFileMetadata:
    filename: str
    language: Optional[str] = None
    version: Optional[str] = None
    call_date: Optional[date] = None
    metadata: CallMetadata = field(default_factory=CallMetadata)
    row: Optional[int] = field(default=None, compare=False)
    # filled in once the file is found in storage
    blob_name: Optional[str] = field(default=None, compare=False)
    file_size: Optional[int] = field(default=None, compare=False)
    file_url: Optional[str] = field(default=None, compare=False)

    @property
    def duration(self) -> Optional[float]:
        return parse_duration(self.metadata.call_duration)

    def to_dict(self):
        return {
            "filename": self.filename,
            "language": self.language,
            "version": self.version,
            "callDate": self.call_date.isoformat() if self.call_date else None,
            "callMetrics": self.metadata.to_json(),
            "extraMetadata": dict(self.metadata.extras),
            "duration": self.duration,
            "fileSize": self.file_size,
        }


@dataclass
class ParseResult:
    items: List[AudioFileMetadata]
    errors: List[str]
    columns: List[str]
    # original header -> canonical name ("extras" for unrecognised)
    column_map: Dict[str, str]


def parse_duration(value) -> Optional[float]:
    """Seconds from ``HH:MM:SS``, ``MM:SS`` or a plain number of seconds."""
    if value is None:
        return None
    if isinstance(value, (int, float)):
        return float(value)
    text = str(value).strip()
    if not text:
        return None
    if ":" in text:
        parts = text.split(":")
        if len(parts) > 3:
            return None
        try:
            nums = [float(p) for p in parts]
        except ValueError:
            return None
        seconds = 0.0
        for n in nums:
            seconds = seconds * 60 + n
        return seconds
    try:
        return float(text)
    except ValueError:
        return None


def parse_date(value) -> Optional[date]:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        # excel serial day number
        return (EXCEL_EPOCH + timedelta(days=float(value))).date()
    text = str(value).strip()
    if not text:
        return None
    for fmt in DATE_FORMATS:
        try:
            return datetime.strptime(text, fmt).date()
        except ValueError:
            continue
    # ISO timestamps such as 2024-01-15T10:30:00
    try:
        return datetime.fromisoformat(text).date()
    except ValueError:
        raise ValueError(f"unrecognised date {text!r}")


def _cell_text(value) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, bool):
        return str(value).lower()
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, (date, time)):
        return value.isoformat()
    text = str(value).strip()
    return text or None


def _map_columns(headers: List[Optional[str]]) -> Tuple[Dict[str, int], Dict[str, int], Dict[int, str]]:
    """Return (file column -> index, metadata attr -> index, index -> extra header)."""
    file_cols: Dict[str, int] = {}
    meta_cols: Dict[str, int] = {}
    claimed = set()
    normalized = [normalize_header(h) if h else "" for h in headers]

    for name, aliases in FILE_COLUMN_ALIASES.items():
        for idx, norm in enumerate(normalized):
            if norm and idx not in claimed and norm in aliases:
                file_cols[name] = idx
                claimed.add(idx)
                break

    for attr, (_, aliases) in METADATA_ALIASES.items():
        for idx, norm in enumerate(normalized):
            if norm and idx not in claimed and norm in aliases:
                meta_cols[attr] = idx
                claimed.add(idx)
                break

    for name, fragments in FILE_COLUMN_FRAGMENTS.items():
        if name in file_cols:
            continue
        for idx, norm in enumerate(normalized):
            if norm and idx not in claimed and any(f in norm for f in fragments):
                file_cols[name] = idx
                claimed.add(idx)
                log.info("column %r fuzzily matched to %s", headers[idx], name)
                break

    extras = {idx: headers[idx] for idx, norm in enumerate(normalized) if norm and idx not in claimed}
    return file_cols, meta_cols, extras


def _load_rows(source) -> List[tuple]:
    stream = BytesIO(source) if isinstance(source, (bytes, bytearray)) else source
    try:
        wb = openpyxl.load_workbook(filename=stream, read_only=True, data_only=True)
    except (InvalidFileException, zipfile.BadZipFile, OSError, KeyError, ValueError) as e:
        raise MetadataError("Could not read Excel file", {"detail": str(e)})
    try:
        sheet = wb[wb.sheetnames[0]]
        return [tuple(r) for r in sheet.iter_rows(values_only=True)]
    finally:
        wb.close()


def parse_metadata_workbook(source) -> ParseResult:
    """Parse the first worksheet of an uploaded metadata workbook.

    Bad rows are reported in ``errors`` and skipped; a workbook that yields
    no usable row at all raises :class:`MetadataError`.
    """
    rows = _load_rows(source)
    if not rows or all(c is None for c in rows[0]):
        raise MetadataError("Excel file has no header row")

    headers = [_cell_text(c) for c in rows[0]]
    columns = [h for h in headers if h]
    file_cols, meta_cols, extra_cols = _map_columns(headers)
    if "filename" not in file_cols:
        raise MetadataError(
            "No filename column found in Excel file",
            {"availableColumns": columns},
        )

    column_map = {headers[i]: name for name, i in file_cols.items()}
    column_map.update({headers[i]: METADATA_ALIASES[a][0] for a, i in meta_cols.items()})
    column_map.update({h: "extras" for h in extra_cols.values()})

    data_rows = [(n, r) for n, r in enumerate(rows[1:], start=2) if any(c not in (None, "") for c in r)]
    if not data_rows:
        raise MetadataError("Excel file has no data rows", {"availableColumns": columns})

    def cell(row, idx):
        return row[idx] if idx is not None and idx < len(row) else None

    items: List[AudioFileMetadata] = []
    errors: List[str] = []
    seen: Dict[str, int] = {}
    for n, row in data_rows:
        filename = _cell_text(cell(row, file_cols["filename"]))
        if not filename:
            errors.append(f"Row {n}: missing filename")
            continue
        if filename in seen:
            errors.append(f"Row {n}: duplicate filename {filename!r} (first seen on row {seen[filename]})")
            continue

        try:
            call_date = parse_date(cell(row, file_cols.get("call_date")))
        except ValueError as e:
            errors.append(f"Row {n}: invalid call date, {e}")
            continue

        language = _cell_text(cell(row, file_cols.get("language")))
        if language:
            language = language.lower()
            if language not in LANGUAGES:
                log.warning("row %d: unsupported language %r ignored", n, language)
                language = None

        meta = CallMetadata(
            extras={h: _cell_text(cell(row, i)) for i, h in extra_cols.items() if _cell_text(cell(row, i)) is not None},
            **{attr: _cell_text(cell(row, i)) for attr, i in meta_cols.items()},
        )
        seen[filename] = n
        items.append(AudioFileMetadata(
            filename=filename,
            language=language,
            version=_cell_text(cell(row, file_cols.get("version"))),
            call_date=call_date,
            metadata=meta,
            row=n,
        ))

    if not items:
        raise MetadataError("No valid rows found in Excel file", {"errors": errors})
    log.info("parsed %d metadata rows (%d row errors)", len(items), len(errors))
    return ParseResult(items=items, errors=errors, columns=columns, column_map=column_map)


def match_with_storage(items: Iterable[AudioFileMetadata], blobs) -> Tuple[List[AudioFileMetadata], List[AudioFileMetadata]]:
    """Pair metadata rows with blobs by name; unmatched rows are returned separately.

    A row matches a blob with the same full name, or failing that the only
    blob whose basename equals the filename.
    """
    by_name = {b.name: b for b in blobs}
    by_base: Dict[str, list] = {}
    for b in by_name.values():
        by_base.setdefault(b.name.rsplit("/", 1)[-1], []).append(b)

    matched, missing = [], []
    for item in items:
        blob = by_name.get(item.filename)
        if blob is None and len(by_base.get(item.filename, [])) == 1:
            blob = by_base[item.filename][0]
        if blob is None:
            log.warning("file %s listed in metadata but not found in storage", item.filename)
            missing.append(item)
            continue
        item.blob_name = blob.name
        item.file_size = blob.size
        item.file_url = blob.url
        matched.append(item)
    return matched, missing


TEMPLATE_FILE_COLUMNS = (
    ("filename", "filename"),
    ("language", "language"),
    ("version", "version"),
    ("call_date", "call_date"),
)
TEMPLATE_METADATA_COLUMNS = (
    ("callId", "call_id"),
    ("callType", "call_type"),
    ("OLMSID", "agent_id"),
    ("Name", "agent_name"),
    ("PBXID", "pbx_id"),
    ("partnerName", "partner_name"),
    ("customerMobile", "customer_mobile"),
    ("callDuration", "call_duration"),
    ("subType", "sub_type"),
    ("subSubType", "sub_sub_type"),
    ("VOC", "voc"),
    ("languageOfCall", "language_of_call"),
    ("userRole", "user_role"),
    ("advisorCategory", "advisor_category"),
    ("campaign", "campaign"),
    ("businessSegment", "business_segment"),
    ("LOB", "lob"),
    ("formName", "form_name"),
    ("auditRole", "audit_role"),
)

SAMPLE_ROWS = [
    AudioFileMetadata(
        filename="call_0001.mp3",
        language="english",
        version="1.0",
        call_date=date(2024, 1, 15),
        metadata=CallMetadata(
            agent_id="AG1001", agent_name="Jordan Lee", pbx_id="PBX-17", partner_name="CloudSocial",
            customer_mobile="9876543210", call_duration="185", call_id="CALL-0001", call_type="Inbound",
            sub_type="Billing", sub_sub_type="Refund", voc="Neutral", language_of_call="english",
            user_role="Agent", advisor_category="Performer", campaign="Retention", business_segment="Care",
            lob="Prepaid", form_name="Evaluation Form 1",
        ),
    ),
    AudioFileMetadata(
        filename="call_0002.wav",
        language="spanish",
        version="1.0",
        call_date=date(2024, 1, 16),
        metadata=CallMetadata(
            agent_id="AG1002", agent_name="Sam Rivera", pbx_id="PBX-22", partner_name="CloudSocial",
            customer_mobile="9123456780", call_duration="00:04:10", call_id="CALL-0002", call_type="Outbound",
            sub_type="Sales", sub_sub_type="Upgrade", voc="Positive", language_of_call="spanish",
            user_role="Agent", advisor_category="Trainee", campaign="Upsell", business_segment="Sales",
            lob="Postpaid", form_name="Evaluation Form 1",
        ),
    ),
]


def template_headers(extra_headers: Iterable[str] = ()) -> List[str]:
    return [h for h, _ in TEMPLATE_FILE_COLUMNS] + [h for h, _ in TEMPLATE_METADATA_COLUMNS] + list(extra_headers)


def build_template_workbook(rows: Optional[Iterable[AudioFileMetadata]] = None) -> bytes:
    """Workbook with the expected headers and example rows, as xlsx bytes.

    Extra metadata keys carried by ``rows`` become trailing columns, in the
    order they are first seen.
    """
    rows = SAMPLE_ROWS if rows is None else list(rows)
    extra_headers = list(OrderedDict.fromkeys(k for item in rows for k in item.metadata.extras))
    wb = openpyxl.Workbook()
    ws = wb.active
    ws.title = "Audio Metadata"
    ws.append(template_headers(extra_headers))
    for c in ws[1]:
        c.font = Font(bold=True)

    for item in rows:
        values = [getattr(item, attr) for _, attr in TEMPLATE_FILE_COLUMNS]
        values += [getattr(item.metadata, attr) for _, attr in TEMPLATE_METADATA_COLUMNS]
        values += [item.metadata.extras.get(h) for h in extra_headers]
        ws.append(values)
        if item.call_date is not None:
            ws.cell(row=ws.max_row, column=4).number_format = "yyyy-mm-dd"

    for col in ws.columns:
        ws.column_dimensions[col[0].column_letter].width = max(12, len(str(col[0].value)) + 4)

    out = BytesIO()
    wb.save(out)
    return out.getvalue()

