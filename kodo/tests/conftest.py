"""Shared fixtures: an initialized store under tmp_path and transcript helpers."""

import json
import pytest


KODO_ENV_VARS = (
    "KODO_DIR",
    "KODO_AUTO_REFLECT",
    "KODO_CONFIDENCE_THRESHOLD",
    "KODO_MESSAGE_THRESHOLD",
    "KODO_INTERVAL_MINUTES",
    "KODO_SIMILARITY",
    "KODO_SIMILARITY_THRESHOLD",
    "KODO_EMBEDDING_WEIGHT",
    "KODO_EMBEDDINGS_ENABLED",
    "KODO_EMBEDDING_MODEL",
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for var in KODO_ENV_VARS:
        monkeypatch.delenv(var, raising=False)


@pytest.fixture
def kodo_root(tmp_path):
    return tmp_path / ".kodo"


@pytest.fixture
def config(kodo_root):
    from kodo.common.config import KodoConfig
    return KodoConfig(root=kodo_root)


@pytest.fixture
def store(config):
    from kodo.common.store import RecordStore
    s = RecordStore.from_config(config)
    s.init()
    return s


@pytest.fixture
def message():
    """Build a transcript line in the assistant transcript shape."""
    counter = {"n": 0}

    def _message(role, text):
        counter["n"] += 1
        return {
            "type": role,
            "uuid": f"evt-{counter['n']}",
            "timestamp": "2026-01-01T00:00:00Z",
            "message": {"role": role, "content": text},
        }

    return _message


@pytest.fixture
def transcript(tmp_path):
    """Append JSON lines (and optionally a trailing partial line) to a transcript file."""
    path = tmp_path / "session.jsonl"

    def _append(*entries, partial=None):
        with open(path, "a", encoding="utf-8") as f:
            for entry in entries:
                f.write(json.dumps(entry) + "\n")
            if partial is not None:
                f.write(partial)
        return path

    _append.path = path
    return _append
