from __future__ import annotations

from typing import Any, Iterable

from feedmirror.change_detector import MatchSettings
from feedmirror.identity import extract_identity, source_content_key, target_content_key
from feedmirror.models import SourceEvent, TargetEvent, epoch_millis, serialize_datetime


def matching_report(
    sources: Iterable[SourceEvent],
    targets: Iterable[TargetEvent],
    settings: MatchSettings,
    sample_size: int = 3,
) -> dict[str, Any]:
    source_list = [event for event in sources if event.is_complete]
    target_list = list(targets)
    target_identities = {
        identity
        for identity in (
            extract_identity(t.description, settings.marker_label, settings.legacy_marker_labels)
            for t in target_list
        )
        if identity
    }
    target_keys = {target_content_key(t, settings.title_prefix) for t in target_list if t.start is not None}

    by_identity = 0
    by_content_only = 0
    unmatched: list[SourceEvent] = []
    for event in source_list:
        if event.identity in target_identities:
            by_identity += 1
        elif source_content_key(event) in target_keys:
            by_content_only += 1
        else:
            unmatched.append(event)

    if not target_list:
        verdict = "no_targets"
    elif not source_list:
        verdict = "no_sources"
    elif by_identity == len(source_list):
        verdict = "all_matched"
    elif by_identity == 0:
        verdict = "none_matched"
    else:
        verdict = "partial"

    return {
        "sources": len(source_list),
        "targets": len(target_list),
        "targets_with_identity": len(target_identities),
        "matched_by_identity": by_identity,
        "matched_by_content_only": by_content_only,
        "unmatched_sources": len(unmatched),
        "verdict": verdict,
        "sample_sources": [
            {"title": e.title, "start": serialize_datetime(e.start), "identity": e.identity, "original_uid": e.original_uid}
            for e in source_list[:sample_size]
        ],
        "sample_unmatched": [{"title": e.title, "identity": e.identity} for e in unmatched[:sample_size]],
    }


def find_duplicate_targets(targets: Iterable[TargetEvent]) -> list[list[TargetEvent]]:
    """Group targets sharing title and start. The first of each group is the keeper."""
    groups: dict[tuple[str, int], list[TargetEvent]] = {}
    for target in targets:
        if target.start is None:
            continue
        groups.setdefault((target.title, epoch_millis(target.start)), []).append(target)
    return [group for group in groups.values() if len(group) > 1]


def feed_consistency(first: list[SourceEvent], second: list[SourceEvent]) -> dict[str, Any]:
    if len(first) != len(second):
        return {
            "consistent": False,
            "first_count": len(first),
            "second_count": len(second),
            "consistent_identities": 0,
            "mismatches": [],
        }
    mismatches: list[dict[str, Any]] = []
    for index, (a, b) in enumerate(zip(first, second)):
        if a.identity != b.identity or a.title != b.title:
            mismatches.append(
                {
                    "index": index,
                    "first": {"identity": a.identity, "title": a.title},
                    "second": {"identity": b.identity, "title": b.title},
                }
            )
    return {
        "consistent": not mismatches,
        "first_count": len(first),
        "second_count": len(second),
        "consistent_identities": len(first) - len(mismatches),
        "mismatches": mismatches,
    }
