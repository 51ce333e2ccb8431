from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta

from feedmirror.identity import (
    DEFAULT_IDENTITY_PREFIX,
    DEFAULT_MARKER_LABEL,
    render_description,
    strip_identity_marker,
)
from feedmirror.models import MatchingConfig, SourceEvent, TargetEvent, epoch_millis


@dataclass(frozen=True)
class MatchSettings:
    title_prefix: str = "[Feed] "
    marker_label: str = DEFAULT_MARKER_LABEL
    legacy_marker_labels: tuple[str, ...] = field(default_factory=tuple)
    identity_prefix: str = DEFAULT_IDENTITY_PREFIX
    identity_scheme: str = "rolling32"
    time_tolerance: timedelta = timedelta(minutes=3)
    default_duration: timedelta = timedelta(hours=2)
    collision_policy: str = "last"

    @classmethod
    def from_config(cls, config: MatchingConfig) -> "MatchSettings":
        return cls(
            title_prefix=config.title_prefix,
            marker_label=config.marker_label,
            legacy_marker_labels=tuple(config.legacy_marker_labels),
            identity_prefix=config.identity_prefix,
            identity_scheme=config.identity_scheme,
            time_tolerance=timedelta(seconds=config.time_tolerance_seconds),
            default_duration=timedelta(minutes=config.default_duration_minutes),
            collision_policy=config.collision_policy,
        )

    @property
    def marker_labels(self) -> tuple[str, ...]:
        return (self.marker_label, *self.legacy_marker_labels)


def expected_end(source: SourceEvent, default_duration: timedelta) -> datetime:
    if source.end is not None:
        return source.end
    return source.start + default_duration


def project_target(source: SourceEvent, settings: MatchSettings, *, identity: str | None = None) -> TargetEvent:
    """Build the target-side event that mirrors ``source``."""
    return TargetEvent(
        title=f"{settings.title_prefix}{source.title}",
        start=source.start,
        end=expected_end(source, settings.default_duration),
        location=(source.location or "").strip(),
        description=render_description(source.description, identity or source.identity, settings.marker_label),
    )


def _time_changed(current: datetime | None, expected: datetime, tolerance: timedelta) -> bool:
    if current is None:
        return True
    drift_ms = abs(epoch_millis(current) - epoch_millis(expected))
    return drift_ms >= tolerance // timedelta(milliseconds=1)


def _normalize_location(value: str | None) -> str:
    return (value or "").strip().casefold()


def changed_fields(target: TargetEvent, source: SourceEvent, settings: MatchSettings) -> list[str]:
    fields: list[str] = []
    if (target.title or "") != f"{settings.title_prefix}{source.title}":
        fields.append("title")
    if _time_changed(target.start, source.start, settings.time_tolerance):
        fields.append("start")
    if _time_changed(target.end, expected_end(source, settings.default_duration), settings.time_tolerance):
        fields.append("end")
    if _normalize_location(target.location) != _normalize_location(source.location):
        fields.append("location")
    labels = settings.marker_labels
    if strip_identity_marker(target.description, labels) != strip_identity_marker(source.description, labels):
        fields.append("description")
    return fields


def needs_update(target: TargetEvent, source: SourceEvent, settings: MatchSettings) -> bool:
    return bool(changed_fields(target, source, settings))
