"""Pytest fixtures for convo-search tests."""

import json
import tempfile
from datetime import datetime, timezone
from pathlib import Path

import pytest


@pytest.fixture
def temp_dir():
    """Create a temporary directory for test files."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture(autouse=True)
def isolated_settings(temp_dir, monkeypatch):
    """Point settings at the temp directory so tests never touch ~/.local."""
    from convo_search.config import get_settings

    monkeypatch.setenv("CONVO_SEARCH_DATA_DIR", str(temp_dir / "data"))
    monkeypatch.setenv("CONVO_SEARCH_ARCHIVE_PATH", str(temp_dir / "conversations.json"))
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


def mapping_conversation(conv_id, title, inserted_at, fragments):
    """Build a conversation in the mapping-tree export format."""
    mapping = {"root": {"children": ["msg-1"] if fragments else []}}
    for i, (fragment_type, content) in enumerate(fragments, 1):
        node_id = f"msg-{i}"
        next_id = f"msg-{i + 1}"
        mapping[node_id] = {
            "message": {
                "inserted_at": inserted_at,
                "fragments": [{"type": fragment_type, "content": content}],
            },
            "children": [next_id] if i < len(fragments) else [],
        }
    return {
        "id": conv_id,
        "title": title,
        "inserted_at": inserted_at,
        "updated_at": inserted_at,
        "mapping": mapping,
    }


@pytest.fixture
def sample_archive():
    """A small archive in the mapping-tree export format."""
    return [
        mapping_conversation(
            "1",
            "Rust ownership",
            "2024-01-01T00:00:00Z",
            [("REQUEST", "How does the borrow checker work?"), ("RESPONSE", "borrow checker rules")],
        ),
        mapping_conversation(
            "2",
            "Go channels",
            "2024-02-01T00:00:00Z",
            [("REQUEST", "Explain select"), ("RESPONSE", "goroutines and select")],
        ),
        mapping_conversation(
            "3",
            "О гравитации",
            "2024-03-01T00:00:00Z",
            [("REQUEST", "Что такое гравитация и как она работает?")],
        ),
    ]


@pytest.fixture
def archive_file(temp_dir, sample_archive):
    """Write the sample archive where settings expect it."""
    path = temp_dir / "conversations.json"
    path.write_text(json.dumps(sample_archive, ensure_ascii=False), encoding="utf-8")
    return path


@pytest.fixture
def scenario_records():
    """The two-record corpus: id 2 is the more recent."""
    from convo_search.models import ConversationRecord

    return [
        ConversationRecord(
            id="1",
            title="Rust ownership",
            created_at=datetime(2024, 1, 1, tzinfo=timezone.utc),
            body="borrow checker rules",
        ),
        ConversationRecord(
            id="2",
            title="Go channels",
            created_at=datetime(2024, 2, 1, tzinfo=timezone.utc),
            body="goroutines and select",
        ),
    ]
