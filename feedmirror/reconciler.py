"""Classify feed events against mirrored calendar events.

The reconciler is pure: it never talks to the feed or the calendar. It returns
a :class:`ReconciliationResult` and the ordered mutation requests an executor
must apply (creates and updates in source order, then deletes in target order).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from typing import Any, Iterable

from feedmirror.change_detector import MatchSettings, changed_fields, project_target
from feedmirror.identity import (
    derive_identity,
    extract_identity,
    source_content_key,
    target_content_key,
)
from feedmirror.models import SourceEvent, TargetEvent

logger = logging.getLogger(__name__)

ACTION_CREATE = "create"
ACTION_UPDATE = "update"
ACTION_DELETE = "delete"

CREATED = "created"
UPDATED = "updated"
MIGRATED = "migrated"
UNCHANGED = "unchanged"
REMOVED = "removed"

CLASSIFICATIONS = (CREATED, UPDATED, MIGRATED, UNCHANGED, REMOVED)


@dataclass(frozen=True)
class MutationRequest:
    action: str
    classification: str
    source: SourceEvent | None = None
    target: TargetEvent | None = None
    desired: TargetEvent | None = None
    fields: tuple[str, ...] = ()

    @property
    def identity(self) -> str:
        if self.source is not None and self.source.identity:
            return self.source.identity
        if self.target is not None:
            return self.target.uid or self.target.external_ref
        return ""

    @property
    def title(self) -> str:
        if self.desired is not None:
            return self.desired.title
        if self.target is not None:
            return self.target.title
        return ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "action": self.action,
            "classification": self.classification,
            "identity": self.identity,
            "title": self.title,
            "fields": list(self.fields),
            "source": self.source.to_dict() if self.source else None,
            "target": self.target.to_dict() if self.target else None,
            "desired": self.desired.to_dict() if self.desired else None,
        }


@dataclass
class ReconciliationResult:
    created: list[SourceEvent] = field(default_factory=list)
    updated: list[SourceEvent] = field(default_factory=list)
    migrated: list[SourceEvent] = field(default_factory=list)
    unchanged: list[SourceEvent] = field(default_factory=list)
    removed: list[TargetEvent] = field(default_factory=list)
    source_collisions: list[str] = field(default_factory=list)
    target_collisions: list[str] = field(default_factory=list)
    dropped_sources: int = 0

    def counts(self) -> dict[str, int]:
        return {
            CREATED: len(self.created),
            UPDATED: len(self.updated),
            MIGRATED: len(self.migrated),
            UNCHANGED: len(self.unchanged),
            REMOVED: len(self.removed),
        }

    @property
    def has_changes(self) -> bool:
        return bool(self.created or self.updated or self.migrated or self.removed)

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = dict(self.counts())
        payload["source_collisions"] = list(self.source_collisions)
        payload["target_collisions"] = list(self.target_collisions)
        payload["dropped_sources"] = self.dropped_sources
        return payload


class Reconciler:
    def __init__(self, settings: MatchSettings | None = None) -> None:
        self.settings = settings or MatchSettings()

    def _source_identity(self, event: SourceEvent) -> str:
        if event.identity:
            return event.identity
        return derive_identity(
            event.title,
            event.start,
            event.location,
            prefix=self.settings.identity_prefix,
            scheme=self.settings.identity_scheme,
        )

    def _index_sources(
        self, sources: Iterable[SourceEvent], result: ReconciliationResult
    ) -> dict[str, SourceEvent]:
        by_identity: dict[str, SourceEvent] = {}
        for event in sources:
            if not event.is_complete:
                result.dropped_sources += 1
                continue
            identity = self._source_identity(event)
            if identity != event.identity:
                event = replace(event, identity=identity)
            if identity in by_identity:
                result.source_collisions.append(identity)
                logger.warning(
                    "Source identity collision on %s: %r vs %r (keeping %s)",
                    identity,
                    by_identity[identity].title,
                    event.title,
                    self.settings.collision_policy,
                )
                if self.settings.collision_policy == "first":
                    continue
            by_identity[identity] = event
        return by_identity

    def _index_targets(
        self, targets: list[TargetEvent], result: ReconciliationResult
    ) -> tuple[dict[str, TargetEvent], dict[str, TargetEvent], list[str | None]]:
        by_identity: dict[str, TargetEvent] = {}
        by_content: dict[str, TargetEvent] = {}
        identities: list[str | None] = []
        for target in targets:
            identity = extract_identity(
                target.description,
                self.settings.marker_label,
                self.settings.legacy_marker_labels,
            )
            identities.append(identity)
            if identity:
                if identity in by_identity:
                    result.target_collisions.append(identity)
                    logger.warning("Target identity %s is stored on more than one event", identity)
                by_identity[identity] = target
            if target.start is not None:
                by_content[target_content_key(target, self.settings.title_prefix)] = target
        return by_identity, by_content, identities

    def reconcile(
        self,
        sources: Iterable[SourceEvent],
        targets: Iterable[TargetEvent],
    ) -> tuple[ReconciliationResult, list[MutationRequest]]:
        result = ReconciliationResult()
        target_list = list(targets)
        source_by_identity = self._index_sources(sources, result)
        target_by_identity, target_by_content, target_identities = self._index_targets(target_list, result)

        source_keys = {identity: source_content_key(source) for identity, source in source_by_identity.items()}

        # Identity matches claim their targets before any content-key rescue runs.
        matches: dict[str, tuple[TargetEvent, bool]] = {}
        claimed: set[int] = set()
        for identity in source_by_identity:
            target = target_by_identity.get(identity)
            if target is not None:
                claimed.add(id(target))
                matches[identity] = (target, False)
        for identity in source_by_identity:
            if identity in matches:
                continue
            candidate = target_by_content.get(source_keys[identity])
            if candidate is not None and id(candidate) not in claimed:
                claimed.add(id(candidate))
                matches[identity] = (candidate, True)

        upserts: list[MutationRequest] = []
        for identity, source in source_by_identity.items():
            target, migrating = matches.get(identity, (None, False))
            if target is None:
                result.created.append(source)
                upserts.append(
                    MutationRequest(
                        action=ACTION_CREATE,
                        classification=CREATED,
                        source=source,
                        desired=project_target(source, self.settings),
                    )
                )
                continue

            if migrating:
                logger.info("Migrating %r to identity %s", source.title, identity)
                result.migrated.append(source)
                upserts.append(
                    MutationRequest(
                        action=ACTION_UPDATE,
                        classification=MIGRATED,
                        source=source,
                        target=target,
                        desired=project_target(source, self.settings),
                        fields=tuple(changed_fields(target, source, self.settings)),
                    )
                )
                continue

            fields = changed_fields(target, source, self.settings)
            if fields:
                result.updated.append(source)
                upserts.append(
                    MutationRequest(
                        action=ACTION_UPDATE,
                        classification=UPDATED,
                        source=source,
                        target=target,
                        desired=project_target(source, self.settings),
                        fields=tuple(fields),
                    )
                )
            else:
                result.unchanged.append(source)

        content_keys = set(source_keys.values())
        deletes: list[MutationRequest] = []
        for target, identity in zip(target_list, target_identities):
            if identity and identity in source_by_identity:
                continue
            if target.start is not None and target_content_key(target, self.settings.title_prefix) in content_keys:
                continue
            result.removed.append(target)
            deletes.append(MutationRequest(action=ACTION_DELETE, classification=REMOVED, target=target))

        return result, upserts + deletes


def reconcile(
    sources: Iterable[SourceEvent],
    targets: Iterable[TargetEvent],
    settings: MatchSettings | None = None,
) -> tuple[ReconciliationResult, list[MutationRequest]]:
    return Reconciler(settings).reconcile(sources, targets)
