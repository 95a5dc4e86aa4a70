"""Knowledge retrieval models shared by the retriever, orchestrator and normalizer.

`KnowledgeEntry` carries one retrieved document's title/source pair and
`KnowledgeContext` bundles the system message injected into a single request
together with those entries (used later as link-repair candidates).
"""
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional


@dataclass
class KnowledgeEntry:
    """One retrieved document.

    Attributes:
        title: Metadata title, or a synthetic 'snippet-N' when missing.
        source: Metadata source (usually a URL), 'unknown' when missing.
    """
    title: str
    source: Optional[str] = None


@dataclass
class KnowledgeContext:
    """Ephemeral, per-request knowledge block. Never stored in history."""
    message: Dict[str, Any]
    entries: List[KnowledgeEntry] = field(default_factory=list)
