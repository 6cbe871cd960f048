"""Conversation archive loader."""

import json
import logging
import re
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from convo_search.errors import MalformedArchive, MalformedRecord
from convo_search.models import ConversationRecord, LoadReport, Message

logger = logging.getLogger(__name__)

# ```python / ``` / ~~~ lines opening or closing a fenced code block
CODE_FENCE_RE = re.compile(r"^[ \t]*(?:`{3,}|~{3,})[^\n]*$", re.MULTILINE)

CREATED_KEYS = ("inserted_at", "created_at", "create_time", "timestamp")
UPDATED_KEYS = ("updated_at", "update_time")


def parse_timestamp(value: Any) -> datetime | None:
    """Parse an ISO string or epoch seconds into a UTC-aware datetime."""
    if value is None or isinstance(value, bool):
        return None

    if isinstance(value, (int, float)):
        try:
            return datetime.fromtimestamp(value, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None

    if not isinstance(value, str) or not value.strip():
        return None

    try:
        dt = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    except ValueError:
        return None
    # If naive, assume UTC
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def first_timestamp(entry: dict[str, Any], keys: tuple[str, ...]) -> datetime | None:
    for key in keys:
        ts = parse_timestamp(entry.get(key))
        if ts is not None:
            return ts
    return None


def flatten_code_blocks(text: str) -> str:
    """Drop Markdown code fence lines, keeping the code itself as plain text."""
    if "```" not in text and "~~~" not in text:
        return text
    return CODE_FENCE_RE.sub("", text)


def extract_mapping_messages(mapping: dict[str, Any]) -> list[Message]:
    """Walk a mapping-style conversation tree depth-first from its root node."""
    messages: list[Message] = []
    root = mapping.get("root")
    if not isinstance(root, dict):
        return messages

    visited: set[str] = set()
    # explicit stack so deep trees don't hit the recursion limit
    stack: list[Any] = list(reversed(root.get("children") or []))
    while stack:
        node_id = stack.pop()
        if not isinstance(node_id, str) or node_id in visited:
            continue
        visited.add(node_id)

        node = mapping.get(node_id)
        if not isinstance(node, dict):
            continue

        message = node.get("message")
        if isinstance(message, dict):
            ts = parse_timestamp(message.get("inserted_at"))
            for fragment in message.get("fragments") or []:
                if not isinstance(fragment, dict):
                    continue
                content = fragment.get("content")
                if isinstance(content, str) and content.strip():
                    role = str(fragment.get("type") or "unknown").lower()
                    messages.append(Message(role=role, content=content, timestamp=ts))

        children = node.get("children") or []
        if isinstance(children, list):
            stack.extend(reversed(children))

    return messages


def extract_flat_messages(raw_messages: list[Any]) -> list[Message]:
    """Extract role-tagged messages from a plain `messages` list."""
    messages: list[Message] = []
    for raw in raw_messages:
        if not isinstance(raw, dict):
            continue
        content = raw.get("content")
        # Some exports split content into parts
        if isinstance(content, list):
            content = "\n".join(p for p in content if isinstance(p, str))
        if isinstance(content, str) and content.strip():
            messages.append(
                Message(
                    role=str(raw.get("role") or "unknown"),
                    content=content,
                    timestamp=parse_timestamp(raw.get("timestamp")),
                )
            )
    return messages


def build_body(messages: list[Message]) -> str:
    """Concatenate message contents into the searchable body text."""
    return "\n".join(flatten_code_blocks(m.content).strip("\n") for m in messages)


def parse_entry(entry: Any, position: int) -> ConversationRecord:
    """Normalize one archive entry.

    Raises MalformedRecord if the entry can't be turned into a record.
    """
    if not isinstance(entry, dict):
        raise MalformedRecord(position, f"expected an object, got {type(entry).__name__}")

    raw_id = entry.get("id")
    if isinstance(raw_id, bool) or not isinstance(raw_id, (str, int)):
        raise MalformedRecord(position, "missing or invalid id")
    record_id = str(raw_id).strip()
    if not record_id:
        raise MalformedRecord(position, "empty id")

    if "mapping" in entry:
        mapping = entry["mapping"]
        if not isinstance(mapping, dict):
            raise MalformedRecord(position, "mapping is not an object")
        messages = extract_mapping_messages(mapping)
    elif "messages" in entry:
        raw_messages = entry["messages"]
        if not isinstance(raw_messages, list):
            raise MalformedRecord(position, "messages is not a list")
        messages = extract_flat_messages(raw_messages)
    else:
        messages = []

    title = entry.get("title")
    if not isinstance(title, str) or not title.strip():
        title = f"Conversation {position}"

    return ConversationRecord(
        id=record_id,
        title=title.strip(),
        created_at=first_timestamp(entry, CREATED_KEYS),
        body=build_body(messages),
        updated_at=first_timestamp(entry, UPDATED_KEYS),
        message_count=len(messages),
    )


def load_archive(data: bytes | str) -> LoadReport:
    """Parse raw archive content into conversation records.

    Malformed entries are skipped and counted; only an unusable top-level
    structure raises MalformedArchive.
    """
    try:
        if isinstance(data, bytes):
            data = data.decode("utf-8-sig")
        payload = json.loads(data)
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise MalformedArchive(f"Archive is not valid JSON: {e}") from e

    if isinstance(payload, dict) and isinstance(payload.get("conversations"), list):
        entries = payload["conversations"]
    elif isinstance(payload, list):
        entries = payload
    else:
        raise MalformedArchive("Archive must be a list of conversations")

    report = LoadReport()
    seen_ids: set[str] = set()

    for position, entry in enumerate(entries, 1):
        try:
            record = parse_entry(entry, position)
            if record.id in seen_ids:
                raise MalformedRecord(position, f"duplicate id {record.id!r}")
        except MalformedRecord as e:
            logger.warning("Skipping malformed conversation (%s)", e)
            report.skipped += 1
            report.warnings.append(str(e))
            continue

        seen_ids.add(record.id)
        report.records.append(record)

    logger.info(
        "Loaded %d conversations (%d skipped)", len(report.records), report.skipped
    )
    return report


def load_archive_file(path: Path) -> LoadReport:
    """Load an archive from disk."""
    try:
        data = Path(path).read_bytes()
    except OSError as e:
        raise MalformedArchive(f"Cannot read archive {path}: {e}") from e
    return load_archive(data)
