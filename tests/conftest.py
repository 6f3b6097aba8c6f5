"""Shared fixtures and fakes."""

import time
from pathlib import Path
from typing import Optional

import pytest

from kidguard.llm import Label, LLMConfig
from kidguard.storage import RuleStore


class FakeClassifier:
    """Stands in for ContentClassifier without an Ollama server.

    ``labels`` maps exact content to categories; anything else gets
    ``default`` (None means "no label", i.e. a classifier failure).
    """

    def __init__(
        self,
        labels: Optional[dict[str, list[str]]] = None,
        default: Optional[list[str]] = None,
        available: bool = True,
        delay: float = 0.0,
        error: Optional[Exception] = None,
    ) -> None:
        self.config = LLMConfig()
        self.labels = labels or {}
        self.default = default
        self._available = available
        self.delay = delay
        self.error = error
        self.calls: list[str] = []

    @property
    def available(self) -> bool:
        return self._available

    def check_available(self) -> bool:
        return self._available

    def classify(self, content: str) -> Optional[Label]:
        self.calls.append(content)
        if self.delay:
            time.sleep(self.delay)
        if self.error is not None:
            raise self.error
        categories = self.labels.get(content, self.default)
        if categories is None:
            return None
        return Label(categories=list(categories), confidence=0.9)


@pytest.fixture()
def fake_classifier() -> type[FakeClassifier]:
    """Provide the FakeClassifier class for building classifier doubles."""
    return FakeClassifier


@pytest.fixture()
def tmp_db_path(tmp_path: Path) -> Path:
    """Provide a temporary DuckDB path."""
    return tmp_path / "test_rules.db"


@pytest.fixture()
def rule_store(tmp_db_path: Path) -> RuleStore:
    """Provide a connected RuleStore on a temp DB."""
    store = RuleStore(tmp_db_path)
    store.connect()
    yield store  # type: ignore[misc]
    store.close()


@pytest.fixture()
def shared_dir(tmp_path: Path) -> Path:
    """Provide an existing, writable shared snapshot directory."""
    path = tmp_path / "shared"
    path.mkdir()
    return path
