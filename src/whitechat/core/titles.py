from ..config import DEFAULT_TITLE, TITLE_ELLIPSIS, TITLE_MAX_CHARS


def derive_title(text: str) -> str:
    """Build a conversation title from the first user message."""
    title = " ".join(text.split())
    if not title:
        return DEFAULT_TITLE
    if len(title) > TITLE_MAX_CHARS:
        title = title[:TITLE_MAX_CHARS] + TITLE_ELLIPSIS
    return title
