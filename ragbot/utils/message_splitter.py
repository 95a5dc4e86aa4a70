"""
Message splitting utility for Twilio's 1600-character WhatsApp body limit
"""
from typing import List

WHATSAPP_MAX_LENGTH = 1600


def _find_split_point(chunk_text: str, max_length: int) -> int:
    # Prefer paragraph, line, sentence, clause, then word boundaries,
    # but only past the middle of the chunk.
    half = max_length * 0.5

    paragraph_break = chunk_text.rfind('\n\n')
    if paragraph_break > half:
        return paragraph_break + 2

    newline = chunk_text.rfind('\n')
    if newline > half:
        return newline + 1

    sentence_end = max(chunk_text.rfind('. '), chunk_text.rfind('! '), chunk_text.rfind('? '))
    if sentence_end > half:
        return sentence_end + 2

    clause = max(chunk_text.rfind(', '), chunk_text.rfind('; '))
    if clause > half:
        return clause + 2

    space = chunk_text.rfind(' ')
    if space > max_length * 0.7:
        return space + 1

    return max_length


def split_message(message: str, max_length: int = WHATSAPP_MAX_LENGTH) -> List[str]:
    """
    Split a long reply into parts that fit the WhatsApp body limit.

    Args:
        message: The message to split
        max_length: Maximum length per part

    Returns:
        List of parts, each at most max_length characters
    """
    if len(message) <= max_length:
        return [message]

    chunks = []
    remaining = message

    while len(remaining) > max_length:
        split_point = _find_split_point(remaining[:max_length], max_length)
        chunk = remaining[:split_point].strip()
        if chunk:
            chunks.append(chunk)
        remaining = remaining[split_point:].strip()

    if remaining:
        chunks.append(remaining)

    return chunks


def needs_splitting(message: str, max_length: int = WHATSAPP_MAX_LENGTH) -> bool:
    """Check if a message needs to be split"""
    return len(message) > max_length
