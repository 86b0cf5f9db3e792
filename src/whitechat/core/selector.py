from collections.abc import Sequence

from .models import Conversation


def next_active_id(
    conversations: Sequence[Conversation], previous_active_id: str | None
) -> str | None:
    """Keep the previous selection if it is still listed, else fall back to the first entry."""
    if previous_active_id is not None and any(
        c.id == previous_active_id for c in conversations
    ):
        return previous_active_id
    if conversations:
        return conversations[0].id
    return None
