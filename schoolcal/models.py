from __future__ import annotations

import re
from dataclasses import asdict, dataclass, field, replace
from datetime import date, datetime, timezone
from typing import Any, TypeVar, Union
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from schoolcal.errors import ConfigurationError


SOURCE_SUBSTITUTIONS = "substitutions"
SOURCE_EXAMS = "exams"
SOURCE_APPOINTMENTS = "appointments"
SOURCE_KINDS = (SOURCE_SUBSTITUTIONS, SOURCE_EXAMS, SOURCE_APPOINTMENTS)

DEFAULT_TIMEZONE = "Europe/Berlin"

_DATE_ONLY_PATTERN = re.compile(r"^\d{4}-\d{2}-\d{2}$")

T = TypeVar("T")
OneOrMany = Union[T, list[T]]


def as_list(value: OneOrMany[T] | None) -> list[T]:
    """Resolve a config value that may be a single item or a list into a list."""
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        return [item for item in value if item is not None]
    return [value]


def _ensure_tz(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def parse_iso_datetime(value: str | datetime | None) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return _ensure_tz(value)
    text = value.strip()
    if not text:
        return None
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    return _ensure_tz(parsed)


def serialize_datetime(value: datetime | None) -> str | None:
    if value is None:
        return None
    return _ensure_tz(value).isoformat()


def parse_temporal(value: str | date | datetime | None) -> date | datetime | None:
    """Parse an archive start/end value: ``YYYY-MM-DD`` stays a date, anything else is an instant."""
    if value is None:
        return None
    if isinstance(value, datetime):
        return _ensure_tz(value)
    if isinstance(value, date):
        return value
    text = str(value).strip()
    if not text:
        return None
    if _DATE_ONLY_PATTERN.match(text):
        return date.fromisoformat(text)
    return parse_iso_datetime(text)


def serialize_temporal(value: date | datetime | None) -> str | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return serialize_datetime(value)
    return value.isoformat()


def temporal_sort_key(value: date | datetime | None) -> str:
    if value is None:
        return ""
    if isinstance(value, datetime):
        return value.astimezone(timezone.utc).isoformat()
    return value.isoformat()


@dataclass
class CalendarTargetConfig:
    base_url: str = ""
    username: str = ""
    password: str = ""
    uid_prefix: str = ""
    calendar_name: str = ""
    timeout_seconds: int = 30

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "CalendarTargetConfig":
        data = data or {}
        return cls(
            base_url=str(data.get("base_url", "") or "").strip(),
            username=str(data.get("username", "") or "").strip(),
            password=str(data.get("password", "") or "").strip(),
            uid_prefix=str(data.get("uid_prefix", "") or "").strip(),
            calendar_name=str(data.get("calendar_name", "") or "").strip(),
            timeout_seconds=max(1, int(data.get("timeout_seconds", 30) or 30)),
        )

    def is_configured(self) -> bool:
        return bool(self.base_url and self.username and self.password)


@dataclass
class OrganizerConfig:
    email: str = ""
    cn: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "OrganizerConfig":
        data = data or {}
        return cls(
            email=str(data.get("email", "") or "").strip(),
            cn=str(data.get("cn", "") or "").strip(),
        )


@dataclass
class SyncConfig:
    interval_seconds: int = 3600
    reminder_minutes: int | None = None
    timezone: str = DEFAULT_TIMEZONE
    extract_retries: int = 3
    owner_label_in_summary: bool = True

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "SyncConfig":
        data = data or {}
        reminder = data.get("reminder_minutes")
        return cls(
            interval_seconds=max(60, int(data.get("interval_seconds", 3600))),
            reminder_minutes=int(reminder) if reminder not in (None, "") else None,
            timezone=str(data.get("timezone", DEFAULT_TIMEZONE)).strip() or DEFAULT_TIMEZONE,
            extract_retries=max(1, int(data.get("extract_retries", 3))),
            owner_label_in_summary=bool(data.get("owner_label_in_summary", True)),
        )


@dataclass
class StorageConfig:
    archive_dir: str = "data/archives"

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "StorageConfig":
        data = data or {}
        return cls(archive_dir=str(data.get("archive_dir", "data/archives")).strip() or "data/archives")


@dataclass
class KidConfig:
    id: str
    first_name: str = ""
    last_name: str = ""
    class_name: str = ""

    @classmethod
    def from_value(cls, value: Any) -> "KidConfig":
        if isinstance(value, dict):
            return cls(
                id=str(value.get("id", "")).strip(),
                first_name=str(value.get("first_name", "") or "").strip(),
                last_name=str(value.get("last_name", "") or "").strip(),
                class_name=str(value.get("class_name", "") or "").strip(),
            )
        return cls(id=str(value).strip())

    @property
    def label(self) -> str:
        return self.first_name or f"Kid {self.id}".strip()


@dataclass
class AccountConfig:
    short: str
    school_name: str = ""
    feed_url: str = ""
    username: str = ""
    password: str = ""
    kids: list[KidConfig] = field(default_factory=list)
    sources: list[str] = field(default_factory=lambda: list(SOURCE_KINDS))

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "AccountConfig":
        kids = [KidConfig.from_value(item) for item in as_list(data.get("kids"))]
        raw_sources = as_list(data.get("sources")) or list(SOURCE_KINDS)
        sources = [str(item).strip().lower() for item in raw_sources if str(item).strip().lower() in SOURCE_KINDS]
        short = str(data.get("short", "")).strip()
        return cls(
            short=short,
            school_name=str(data.get("school_name", "") or "").strip() or short,
            feed_url=str(data.get("feed_url", "") or "").strip(),
            username=str(data.get("username", "") or "").strip(),
            password=str(data.get("password", "") or "").strip(),
            kids=[kid for kid in kids if kid.id],
            sources=sources,
        )


@dataclass
class AppConfig:
    calendar: CalendarTargetConfig = field(default_factory=CalendarTargetConfig)
    organizer: OrganizerConfig = field(default_factory=OrganizerConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    accounts: list[AccountConfig] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "AppConfig":
        data = data or {}
        raw_accounts = data.get("accounts")
        if isinstance(raw_accounts, dict) and "accounts" in raw_accounts:
            raw_accounts = raw_accounts["accounts"]
        accounts = [
            AccountConfig.from_dict(item) for item in as_list(raw_accounts) if isinstance(item, dict)
        ]
        return cls(
            calendar=CalendarTargetConfig.from_dict(data.get("calendar")),
            organizer=OrganizerConfig.from_dict(data.get("organizer")),
            sync=SyncConfig.from_dict(data.get("sync")),
            storage=StorageConfig.from_dict(data.get("storage")),
            accounts=[account for account in accounts if account.short],
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    def validate(self) -> None:
        missing = [
            name
            for name, value in (
                ("calendar.base_url", self.calendar.base_url),
                ("calendar.username", self.calendar.username),
                ("calendar.password", self.calendar.password),
            )
            if not value
        ]
        if missing:
            raise ConfigurationError(f"Calendar config incomplete: {', '.join(missing)} required.")
        if not self.accounts:
            raise ConfigurationError("No accounts configured.")
        try:
            ZoneInfo(self.sync.timezone)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ConfigurationError(f"Unknown sync.timezone: {self.sync.timezone}") from exc


@dataclass
class CalendarInfo:
    calendar_id: str
    name: str
    url: str

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class DomainRecord:
    uid: str
    kind: str = ""
    start: date | datetime | None = None
    end: date | datetime | None = None
    all_day: bool = False
    summary: str = ""
    description: str = ""
    location: str = ""
    reminders: list[int] | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    last_synced_at: datetime | None = None
    sync_hash: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "DomainRecord":
        reminders = data.get("reminders")
        return cls(
            uid=str(data.get("uid", "") or "").strip(),
            kind=str(data.get("kind", "") or ""),
            start=parse_temporal(data.get("start")),
            end=parse_temporal(data.get("end")),
            all_day=bool(data.get("all_day", False)),
            summary=str(data.get("summary", "") or ""),
            description=str(data.get("description", "") or ""),
            location=str(data.get("location", "") or ""),
            reminders=[int(x) for x in reminders] if isinstance(reminders, list) else None,
            metadata=dict(data.get("metadata") or {}),
            last_synced_at=parse_iso_datetime(data.get("last_synced_at")),
            sync_hash=data.get("sync_hash") or None,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "uid": self.uid,
            "kind": self.kind,
            "start": serialize_temporal(self.start),
            "end": serialize_temporal(self.end),
            "all_day": self.all_day,
            "summary": self.summary,
            "description": self.description,
            "location": self.location,
            "reminders": list(self.reminders) if self.reminders is not None else None,
            "metadata": dict(self.metadata),
            "last_synced_at": serialize_datetime(self.last_synced_at),
            "sync_hash": self.sync_hash,
        }

    def clone(self) -> "DomainRecord":
        return replace(
            self,
            reminders=list(self.reminders) if self.reminders is not None else None,
            metadata=dict(self.metadata),
        )

    def with_updates(self, **kwargs: Any) -> "DomainRecord":
        copied = self.clone()
        for key, value in kwargs.items():
            setattr(copied, key, value)
        return copied

    @property
    def sort_key(self) -> tuple[str, str]:
        return temporal_sort_key(self.start), self.uid


@dataclass
class ArchiveMetadata:
    source_kind: str
    owner: dict[str, Any] = field(default_factory=dict)
    school: dict[str, Any] = field(default_factory=dict)
    last_update: datetime | None = None
    generated_at: datetime | None = None
    auxiliary: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "ArchiveMetadata":
        data = data or {}
        return cls(
            source_kind=str(data.get("source_kind", "") or ""),
            owner=dict(data.get("owner") or {}),
            school=dict(data.get("school") or {}),
            last_update=parse_iso_datetime(data.get("last_update")),
            generated_at=parse_iso_datetime(data.get("generated_at")),
            auxiliary=dict(data.get("auxiliary") or {}),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "source_kind": self.source_kind,
            "owner": dict(self.owner),
            "school": dict(self.school),
            "last_update": serialize_datetime(self.last_update),
            "generated_at": serialize_datetime(self.generated_at),
            "auxiliary": dict(self.auxiliary),
        }


@dataclass
class Archive:
    metadata: ArchiveMetadata
    entries: list[DomainRecord] = field(default_factory=list)

    @classmethod
    def empty(cls, source_kind: str) -> "Archive":
        return cls(metadata=ArchiveMetadata(source_kind=source_kind))

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Archive":
        entries = data.get("entries")
        if not isinstance(entries, list):
            raise ValueError("archive entries must be a list")
        return cls(
            metadata=ArchiveMetadata.from_dict(data.get("metadata")),
            entries=[DomainRecord.from_dict(item) for item in entries if isinstance(item, dict)],
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "metadata": self.metadata.to_dict(),
            "entries": [entry.to_dict() for entry in self.entries],
        }

    def with_entries(self, entries: list[DomainRecord]) -> "Archive":
        return Archive(metadata=replace(self.metadata), entries=list(entries))


@dataclass
class SyncCounts:
    pushed: int = 0
    skipped: int = 0
    failed: int = 0

    def add(self, other: "SyncCounts") -> None:
        self.pushed += other.pushed
        self.skipped += other.skipped
        self.failed += other.failed

    def to_dict(self) -> dict[str, int]:
        return asdict(self)


@dataclass
class SyncResult:
    status: str
    message: str
    duration_ms: int
    counts: SyncCounts
    trigger: str
    archives: list[dict[str, Any]] = field(default_factory=list)
    run_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "message": self.message,
            "duration_ms": self.duration_ms,
            "counts": self.counts.to_dict(),
            "trigger": self.trigger,
            "archives": list(self.archives),
            "run_at": serialize_datetime(self.run_at),
        }


def default_app_config() -> AppConfig:
    return AppConfig()
