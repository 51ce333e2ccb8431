from __future__ import annotations

import dataclasses
import hashlib
import re
from datetime import datetime
from typing import Iterable

from feedmirror.models import SourceEvent, TargetEvent, epoch_millis

IDENTITY_SEPARATOR = "\x1f"
CONTENT_KEY_SEPARATOR = "|"
DEFAULT_IDENTITY_PREFIX = "feed-stable-"
DEFAULT_MARKER_LABEL = "Feed-UID"

_INT32_MASK = 0xFFFFFFFF
_INT32_SIGN = 0x80000000


def _identity_material(title: str, start: datetime, location: str) -> str:
    return IDENTITY_SEPARATOR.join(
        (
            (title or "").strip(),
            str(epoch_millis(start)),
            (location or "").strip(),
        )
    )


def rolling_hash32(text: str) -> int:
    """Multiply-add (x31) hash over UTF-16 code units, as a non-negative int32 magnitude."""
    value = 0
    data = text.encode("utf-16-le")
    for index in range(0, len(data), 2):
        code_unit = data[index] | (data[index + 1] << 8)
        value = (value * 31 + code_unit) & _INT32_MASK
    if value & _INT32_SIGN:
        value -= 1 << 32
    return abs(value)


def derive_identity(
    title: str,
    start: datetime,
    location: str = "",
    *,
    prefix: str = DEFAULT_IDENTITY_PREFIX,
    scheme: str = "rolling32",
) -> str:
    material = _identity_material(title, start, location)
    if scheme == "blake2b64":
        digest = hashlib.blake2b(material.encode("utf-8"), digest_size=8).hexdigest()
        return f"{prefix}{digest}"
    return f"{prefix}{rolling_hash32(material)}"


def annotate_identity(
    event: SourceEvent,
    *,
    prefix: str = DEFAULT_IDENTITY_PREFIX,
    scheme: str = "rolling32",
) -> SourceEvent:
    if not event.is_complete:
        return dataclasses.replace(event, identity="")
    identity = derive_identity(event.title, event.start, event.location, prefix=prefix, scheme=scheme)
    return dataclasses.replace(event, identity=identity)


def strip_title_prefix(title: str, title_prefix: str) -> str:
    text = title or ""
    if title_prefix and text.startswith(title_prefix):
        text = text[len(title_prefix) :]
    return text


def content_key(title: str, start: datetime, location: str = "", *, title_prefix: str = "") -> str:
    return CONTENT_KEY_SEPARATOR.join(
        (
            strip_title_prefix(title, title_prefix).strip(),
            str(epoch_millis(start)),
            (location or "").strip(),
        )
    )


def source_content_key(event: SourceEvent) -> str:
    return content_key(event.title, event.start, event.location)


def target_content_key(event: TargetEvent, title_prefix: str) -> str:
    return content_key(event.title, event.start, event.location, title_prefix=title_prefix)


def _label_alternation(labels: Iterable[str]) -> str:
    cleaned = [re.escape(label.strip()) for label in labels if label and label.strip()]
    return "|".join(cleaned) or re.escape(DEFAULT_MARKER_LABEL)


def marker_line(identity: str, label: str = DEFAULT_MARKER_LABEL) -> str:
    return f"{label}: {identity}"


def render_description(description: str, identity: str, label: str = DEFAULT_MARKER_LABEL) -> str:
    body = (description or "").strip()
    if not body:
        return marker_line(identity, label)
    return f"{body}\n\n{marker_line(identity, label)}"


def extract_identity(
    description: str | None,
    label: str = DEFAULT_MARKER_LABEL,
    legacy_labels: Iterable[str] = (),
) -> str | None:
    if not description:
        return None
    current = re.search(rf"^[ \t]*{re.escape(label)}:[ \t]*([^\s]+)", description, re.MULTILINE)
    if current:
        return current.group(1).strip()
    # Older records may carry identities with embedded spaces; take the rest of the line.
    for legacy in legacy_labels:
        if not legacy:
            continue
        match = re.search(rf"^[ \t]*{re.escape(legacy)}:[ \t]*([^\n\r]+)", description, re.MULTILINE)
        if match and match.group(1).strip():
            return match.group(1).strip()
    return None


def strip_identity_marker(description: str | None, labels: Iterable[str] = (DEFAULT_MARKER_LABEL,)) -> str:
    if not description:
        return ""
    text = description.replace("\r\n", "\n").replace("\r", "\n")
    pattern = re.compile(rf"^[ \t]*(?:{_label_alternation(labels)}):[^\n]*$", re.MULTILINE)
    return pattern.sub("", text).strip()


def has_identity_marker(description: str | None, labels: Iterable[str] = (DEFAULT_MARKER_LABEL,)) -> bool:
    if not description:
        return False
    pattern = rf"^[ \t]*(?:{_label_alternation(labels)}):"
    return re.search(pattern, description, re.MULTILINE) is not None


def is_managed(event: TargetEvent, title_prefix: str, labels: Iterable[str] = (DEFAULT_MARKER_LABEL,)) -> bool:
    if title_prefix and not (event.title or "").startswith(title_prefix):
        return False
    return has_identity_marker(event.description, labels)
