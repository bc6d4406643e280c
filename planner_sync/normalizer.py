"""
Text and field normalization for tracker payloads.

Turns rich-document descriptions into plain text, coerces the numeric
estimate field into a usable story point value and maps tracker status
names onto the internal three-state lifecycle.
"""

import math
import re
from datetime import datetime, timezone
from typing import Any, Optional

from .constants import IssueStatuses, StoryPoints, WorkStatus


# Rich-document node kinds
TEXT_NODE = "text"
INLINE_JOIN_NODES = {"paragraph", "listItem"}
LIST_NODES = {"bulletList", "orderedList"}

BULLET_MARKER = "• "


def _children(node: Any) -> list:
    if isinstance(node, list):
        return node
    if isinstance(node, dict):
        content = node.get("content")
        if isinstance(content, list):
            return content
    return []


def _join(node: Any, parts: list) -> str:
    node_type = node.get("type") if isinstance(node, dict) else None

    if node_type in INLINE_JOIN_NODES:
        return "".join(parts)
    if node_type in LIST_NODES:
        return "\n".join(BULLET_MARKER + part for part in parts)
    return " ".join(parts)


def extract_plain_text(document: Any) -> str:
    """
    Extract plain text from a rich-document description.

    Text nodes yield their literal content, paragraphs and list items
    concatenate their children, bullet and ordered lists put each child
    on its own bulleted line and any other container joins its children
    with single spaces. A bare string is returned unchanged and a falsy
    input yields "".

    The tree is walked with an explicit stack, so arbitrarily deep
    documents never hit the interpreter recursion limit.

    Args:
        document: Rich-document node, list of nodes, string or None

    Returns:
        Plain text
    """
    if not document:
        return ""
    if isinstance(document, str):
        return document

    values: list = []
    stack = [(document, False)]

    while stack:
        node, expanded = stack.pop()

        if expanded:
            count = len(_children(node))
            parts = values[len(values) - count:] if count else []
            if count:
                del values[len(values) - count:]
            values.append(_join(node, parts))
            continue

        if isinstance(node, str):
            values.append(node)
        elif isinstance(node, dict) and node.get("type") == TEXT_NODE:
            text = node.get("text")
            values.append(text if isinstance(text, str) else "")
        elif isinstance(node, (dict, list)):
            stack.append((node, True))
            for child in reversed(_children(node)):
                stack.append((child, False))
        else:
            values.append("")

    return values[0] if values else ""


def normalize_story_points(raw: Any) -> float:
    """
    Coerce a raw estimate into a story point value.

    Missing estimates default to 1 so they never block an import. Values
    above 100 are treated as a mis-mapped field and reset to 1. The
    result is always clamped into [0.5, 20].

    Args:
        raw: Raw estimate field value (number, numeric string, None...)

    Returns:
        Story points in [0.5, 20]
    """
    value = StoryPoints.DEFAULT

    if raw is None or isinstance(raw, bool):
        value = StoryPoints.DEFAULT
    elif isinstance(raw, (int, float)):
        value = float(raw)
    elif isinstance(raw, str):
        text = raw.strip()
        if text and text != "None":
            try:
                value = float(text)
            except ValueError:
                value = StoryPoints.DEFAULT

    if math.isnan(value) or math.isinf(value) or value > StoryPoints.GARBAGE_THRESHOLD:
        value = StoryPoints.DEFAULT

    return min(max(value, StoryPoints.MIN), StoryPoints.MAX)


def map_external_status(raw_status: Optional[str]) -> str:
    """
    Map a tracker status name onto the internal lifecycle status.

    Args:
        raw_status: Tracker status name, any case

    Returns:
        WorkStatus.COMPLETED, WorkStatus.IN_PROGRESS or WorkStatus.NOT_STARTED
    """
    status = (raw_status or "").strip().lower()

    if status in IssueStatuses.COMPLETED_STATES:
        return WorkStatus.COMPLETED
    if status in IssueStatuses.IN_PROGRESS_STATES:
        return WorkStatus.IN_PROGRESS
    return WorkStatus.NOT_STARTED


def is_completed_status(raw_status: Optional[str]) -> bool:
    """True when the raw tracker status counts as completed."""
    return map_external_status(raw_status) == WorkStatus.COMPLETED


_COMPACT_OFFSET = re.compile(r'([+-]\d{2})(\d{2})$')


def to_naive_utc(value: datetime) -> datetime:
    """Convert an aware datetime to naive UTC; naive values are assumed UTC."""
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def parse_timestamp(value: Any) -> Optional[datetime]:
    """
    Parse a tracker or user supplied timestamp into naive UTC.

    Accepts datetimes, ISO-8601 strings with 'Z', '+HH:MM' or the
    tracker's compact '+HHMM' offset, and plain dates.

    Returns:
        Naive UTC datetime, or None for empty input

    Raises:
        ValueError: If the string is not a recognizable timestamp
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return to_naive_utc(value)
    if not isinstance(value, str):
        raise ValueError(f"Unsupported timestamp value: {value!r}")

    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    text = _COMPACT_OFFSET.sub(r'\1:\2', text)

    return to_naive_utc(datetime.fromisoformat(text))
