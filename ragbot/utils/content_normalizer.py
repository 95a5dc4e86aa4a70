"""
Link normalization for assistant replies.

WhatsApp does not render markdown links, and the model often emits
placeholder targets such as `[Workshop](#)`. Each `[label](target)` is
rewritten to the label followed by a plain URL on its own line. Placeholder
targets are filled from the retrieved knowledge sources, in retrieval order.
When no URL can be found, only the label is kept.
"""
import re
from typing import Iterable, List, Optional

from ..models.knowledge import KnowledgeEntry

MARKDOWN_LINK_RE = re.compile(r"\[([^\]]*?)\]\(([^)]*)\)")
INLINE_URL_RE = re.compile(r"(https?://[^\s)]+|www\.[^\s)]+)")
TRAILING_PUNCTUATION_RE = re.compile(r"[).,;:!?]+$")
WHITESPACE_RE = re.compile(r"\s+")


def is_http_url(value: str) -> bool:
    return value.startswith("http://") or value.startswith("https://")


def candidate_urls(knowledge_entries: Iterable[KnowledgeEntry]) -> List[str]:
    """HTTP(S) sources from the knowledge entries, trimmed, in retrieval order."""
    urls = []
    for entry in knowledge_entries or []:
        source = entry.source
        if isinstance(source, str) and is_http_url(source.strip()):
            urls.append(source.strip())
    return urls


def extract_first_url(value: str) -> Optional[str]:
    match = INLINE_URL_RE.search(value)
    if not match:
        return None
    url = match.group(0)
    if url.startswith("www."):
        return f"https://{url}"
    return url


def resolve_url(target: str, candidates: List[str]) -> Optional[str]:
    """Resolve a link target to an absolute URL.

    Placeholder targets ('', '#', '#anchor') consume the next candidate.
    """
    target = target.strip()

    if not target or target.startswith("#"):
        return candidates.pop(0) if candidates else None
    if is_http_url(target):
        return target
    if target.startswith("www."):
        return f"https://{target}"
    return extract_first_url(target)


def format_link(label: str, url: str) -> str:
    cleaned_label = WHITESPACE_RE.sub(" ", label).strip()
    if not cleaned_label:
        return url
    return f"{cleaned_label}\n{TRAILING_PUNCTUATION_RE.sub('', url)}"


def normalize_assistant_reply(text: str, knowledge_entries: Iterable[KnowledgeEntry]) -> str:
    """Rewrite markdown links in text into WhatsApp-friendly plain text.

    Args:
        text: Assistant reply.
        knowledge_entries: Retrieved entries whose sources fill placeholder links.

    Returns:
        The reply with every `[label](target)` replaced by position.
    """
    if "[" not in text or ")" not in text:
        return text

    candidates = None
    parts = []
    last_end = 0

    for match in MARKDOWN_LINK_RE.finditer(text):
        if candidates is None:
            candidates = candidate_urls(knowledge_entries)

        label, target = match.group(1), match.group(2)
        resolved = resolve_url(target, candidates)
        replacement = format_link(label, resolved) if resolved else label.strip()

        parts.append(text[last_end:match.start()])
        parts.append(replacement)
        last_end = match.end()

    if candidates is None:
        return text

    parts.append(text[last_end:])
    return "".join(parts)
