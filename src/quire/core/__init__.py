"""Core domain types: documents, tabs, annotations and text anchors."""

from .anchoring import AnchorConfidence, AnchorResult, TextAnchor, create_anchor, resolve_anchor
from .models import (
    AnnotationState,
    Document,
    DocumentSource,
    Highlight,
    HighlightColor,
    MarginNote,
    PersistedTab,
    Tab,
    TabCache,
)

__all__ = [
    "AnchorConfidence",
    "AnchorResult",
    "AnnotationState",
    "Document",
    "DocumentSource",
    "Highlight",
    "HighlightColor",
    "MarginNote",
    "PersistedTab",
    "Tab",
    "TabCache",
    "TextAnchor",
    "create_anchor",
    "resolve_anchor",
]
