"""Local model integration for content classification."""

from kidguard.llm.classifier import (
    ClassifierUnavailable,
    ContentClassifier,
    Label,
    LLMConfig,
    sanitize_for_prompt,
)

__all__ = ["ClassifierUnavailable", "ContentClassifier", "Label", "LLMConfig", "sanitize_for_prompt"]
