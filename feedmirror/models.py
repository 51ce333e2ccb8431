from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import date, datetime, time, timedelta, timezone
from typing import Any


IDENTITY_SCHEMES = ("rolling32", "blake2b64")
COLLISION_POLICIES = ("last", "first")


def _ensure_tz(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def parse_iso_datetime(value: str | datetime | None) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return _ensure_tz(value)
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    return _ensure_tz(parsed)


def serialize_datetime(value: datetime | None) -> str | None:
    if value is None:
        return None
    return _ensure_tz(value).isoformat()


def date_to_datetime(value: datetime | date | None, tzinfo: Any = timezone.utc) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=tzinfo)
        return value
    return datetime.combine(value, time.min, tzinfo=tzinfo)


def epoch_millis(value: datetime) -> int:
    return int(_ensure_tz(value).timestamp() * 1000)


def _clamp_int(value: Any, default: int, minimum: int) -> int:
    try:
        number = int(value)
    except (TypeError, ValueError):
        number = default
    return max(minimum, number)


@dataclass
class FeedConfig:
    url: str = ""
    timeout_seconds: int = 30
    user_agent: str = "feedmirror/0.1"

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "FeedConfig":
        data = data or {}
        return cls(
            url=str(data.get("url", "")).strip(),
            timeout_seconds=_clamp_int(data.get("timeout_seconds", 30), 30, 1),
            user_agent=str(data.get("user_agent", "feedmirror/0.1")).strip() or "feedmirror/0.1",
        )


@dataclass
class CalDAVConfig:
    base_url: str = ""
    username: str = ""
    password: str = ""
    calendar_id: str = ""
    calendar_name: str = "Family"

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "CalDAVConfig":
        data = data or {}
        return cls(
            base_url=str(data.get("base_url", "")).strip(),
            username=str(data.get("username", "")).strip(),
            password=str(data.get("password", "")).strip(),
            calendar_id=str(data.get("calendar_id", "")).strip(),
            calendar_name=str(data.get("calendar_name", "Family")).strip() or "Family",
        )


@dataclass
class SyncConfig:
    interval_seconds: int = 10800
    days_lookback: int = 7
    days_lookahead: int = 180
    timezone: str = "UTC"
    mutation_delay_seconds: float = 0.5

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "SyncConfig":
        data = data or {}
        try:
            delay = float(data.get("mutation_delay_seconds", 0.5))
        except (TypeError, ValueError):
            delay = 0.5
        return cls(
            interval_seconds=_clamp_int(data.get("interval_seconds", 10800), 10800, 60),
            days_lookback=_clamp_int(data.get("days_lookback", 7), 7, 0),
            days_lookahead=_clamp_int(data.get("days_lookahead", 180), 180, 1),
            timezone=str(data.get("timezone", "UTC")).strip() or "UTC",
            mutation_delay_seconds=max(0.0, delay),
        )


@dataclass
class MatchingConfig:
    title_prefix: str = "[Feed] "
    marker_label: str = "Feed-UID"
    legacy_marker_labels: list[str] = field(default_factory=list)
    identity_prefix: str = "feed-stable-"
    identity_scheme: str = "rolling32"
    time_tolerance_seconds: int = 180
    default_duration_minutes: int = 120
    collision_policy: str = "last"

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "MatchingConfig":
        data = data or {}
        marker_label = str(data.get("marker_label", "Feed-UID")).strip() or "Feed-UID"
        legacy = data.get("legacy_marker_labels", [])
        if not isinstance(legacy, list):
            legacy = []
        legacy_labels = [str(x).strip() for x in legacy if str(x).strip() and str(x).strip() != marker_label]
        scheme = str(data.get("identity_scheme", "rolling32")).strip().lower()
        if scheme not in IDENTITY_SCHEMES:
            scheme = "rolling32"
        policy = str(data.get("collision_policy", "last")).strip().lower()
        if policy not in COLLISION_POLICIES:
            policy = "last"
        # The prefix is compared verbatim against stored titles, so only None falls back.
        prefix = data.get("title_prefix", "[Feed] ")
        return cls(
            title_prefix="[Feed] " if prefix is None else str(prefix),
            marker_label=marker_label,
            legacy_marker_labels=legacy_labels,
            identity_prefix=str(data.get("identity_prefix", "feed-stable-")).strip() or "feed-stable-",
            identity_scheme=scheme,
            time_tolerance_seconds=_clamp_int(data.get("time_tolerance_seconds", 180), 180, 1),
            default_duration_minutes=_clamp_int(data.get("default_duration_minutes", 120), 120, 1),
            collision_policy=policy,
        )

    @property
    def marker_labels(self) -> list[str]:
        return [self.marker_label, *self.legacy_marker_labels]


@dataclass
class AppConfig:
    feed: FeedConfig = field(default_factory=FeedConfig)
    caldav: CalDAVConfig = field(default_factory=CalDAVConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    matching: MatchingConfig = field(default_factory=MatchingConfig)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "AppConfig":
        data = data or {}
        return cls(
            feed=FeedConfig.from_dict(data.get("feed")),
            caldav=CalDAVConfig.from_dict(data.get("caldav")),
            sync=SyncConfig.from_dict(data.get("sync")),
            matching=MatchingConfig.from_dict(data.get("matching")),
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class CalendarInfo:
    calendar_id: str
    name: str
    url: str

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class SourceEvent:
    """An event read from the external feed. Rebuilt on every run."""

    title: str
    start: datetime | None
    end: datetime | None = None
    location: str = ""
    description: str = ""
    original_uid: str = ""
    identity: str = ""

    @property
    def is_complete(self) -> bool:
        return bool(self.title and self.title.strip()) and self.start is not None

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["start"] = serialize_datetime(self.start)
        payload["end"] = serialize_datetime(self.end)
        return payload


@dataclass(frozen=True)
class TargetEvent:
    """An event stored in the managed CalDAV calendar."""

    title: str
    start: datetime | None
    end: datetime | None = None
    location: str = ""
    description: str = ""
    external_ref: str = ""
    uid: str = ""
    etag: str = ""

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["start"] = serialize_datetime(self.start)
        payload["end"] = serialize_datetime(self.end)
        return payload


@dataclass
class SyncResult:
    status: str
    message: str
    duration_ms: int
    trigger: str
    created: int = 0
    updated: int = 0
    migrated: int = 0
    unchanged: int = 0
    removed: int = 0
    failed: int = 0
    run_id: int | None = None
    run_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def changes_applied(self) -> int:
        return self.created + self.updated + self.migrated + self.removed

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "message": self.message,
            "duration_ms": self.duration_ms,
            "trigger": self.trigger,
            "created": self.created,
            "updated": self.updated,
            "migrated": self.migrated,
            "unchanged": self.unchanged,
            "removed": self.removed,
            "failed": self.failed,
            "changes_applied": self.changes_applied,
            "run_id": self.run_id,
            "run_at": serialize_datetime(self.run_at),
        }


def default_app_config() -> AppConfig:
    return AppConfig()


def sync_window(now: datetime, days_lookback: int, days_lookahead: int) -> tuple[datetime, datetime]:
    now_utc = _ensure_tz(now)
    start = now_utc - timedelta(days=max(0, days_lookback))
    end = now_utc + timedelta(days=max(1, days_lookahead))
    return start, end
