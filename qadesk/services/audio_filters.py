"""Filtering of parsed metadata rows before import or preview."""
import json
from dataclasses import dataclass, field
from datetime import date
from typing import Iterable, List, Optional

from ..errors import ValidationError
from .metadata import AudioFileMetadata, parse_date, parse_duration


def _as_list(value) -> List[str]:
    """Multi-select values arrive as lists, JSON arrays or comma separated text."""
    if value is None:
        return []
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return []
        if text.startswith("["):
            try:
                value = json.loads(text)
            except ValueError:
                raise ValidationError(f"Invalid filter list: {text}")
        else:
            value = text.split(",")
    return [str(v).strip() for v in value if v is not None and str(v).strip()]


def _contains_any(haystack: Optional[str], needles: List[str]) -> bool:
    if not haystack:
        return False
    text = haystack.lower()
    return any(n.lower() in text for n in needles)


@dataclass
class AudioFilters:
    filenames: List[str] = field(default_factory=list)
    languages: List[str] = field(default_factory=list)
    date_start: Optional[date] = None
    date_end: Optional[date] = None
    min_duration: Optional[float] = None
    max_duration: Optional[float] = None
    partner_names: List[str] = field(default_factory=list)
    call_types: List[str] = field(default_factory=list)
    vocs: List[str] = field(default_factory=list)
    campaigns: List[str] = field(default_factory=list)

    @property
    def is_active(self) -> bool:
        return any([
            self.filenames, self.languages, self.date_start, self.date_end,
            self.min_duration is not None, self.max_duration is not None,
            self.partner_names, self.call_types, self.vocs, self.campaigns,
        ])

    @classmethod
    def from_mapping(cls, data) -> "AudioFilters":
        """Build from request form/JSON fields using the API's field names."""
        data = data or {}

        def number(key):
            raw = data.get(key)
            if raw is None or str(raw).strip() == "":
                return None
            value = parse_duration(raw)
            if value is None:
                raise ValidationError(f"Invalid duration for {key}: {raw}")
            return value

        try:
            start = parse_date(data.get("dateRangeStart") or None)
            end = parse_date(data.get("dateRangeEnd") or None)
        except ValueError as e:
            raise ValidationError(f"Invalid date range: {e}")

        return cls(
            filenames=_as_list(data.get("fileNameFilter")),
            languages=[v.lower() for v in _as_list(data.get("languages") or data.get("languageFilter"))],
            date_start=start,
            date_end=end,
            min_duration=number("minDuration"),
            max_duration=number("maxDuration"),
            partner_names=_as_list(data.get("partnerNameFilter")),
            call_types=_as_list(data.get("callTypeFilter")),
            vocs=_as_list(data.get("vocFilter")),
            campaigns=_as_list(data.get("campaignFilter")),
        )

    def matches(self, item: AudioFileMetadata) -> bool:
        meta = item.metadata
        if self.filenames and not _contains_any(item.filename, self.filenames):
            return False
        if self.languages and (item.language or "") not in self.languages:
            return False
        if self.date_start or self.date_end:
            if item.call_date is None:
                return False
            # both ends inclusive
            if self.date_start and item.call_date < self.date_start:
                return False
            if self.date_end and item.call_date > self.date_end:
                return False
        if self.min_duration is not None or self.max_duration is not None:
            duration = item.duration
            if duration is None:
                return False
            if self.min_duration is not None and duration < self.min_duration:
                return False
            if self.max_duration is not None and duration > self.max_duration:
                return False
        if self.partner_names and not _contains_any(meta.partner_name, self.partner_names):
            return False
        if self.call_types and not _contains_any(meta.call_type, self.call_types):
            return False
        if self.vocs and not _contains_any(meta.voc, self.vocs):
            return False
        if self.campaigns and not _contains_any(meta.campaign, self.campaigns):
            return False
        return True


def filter_audio_metadata(items: Iterable[AudioFileMetadata], filters: Optional[AudioFilters]) -> List[AudioFileMetadata]:
    items = list(items)
    if filters is None or not filters.is_active:
        return items
    return [i for i in items if filters.matches(i)]


def available_languages(items: Iterable[AudioFileMetadata]) -> List[str]:
    return sorted({i.language for i in items if i.language})
