from .models import StateOut


def format_sse_event(event_type: str, data: str) -> dict:
    """Format an SSE event for sse-starlette's EventSourceResponse."""
    return {"event": event_type, "data": data}


def sse_state(state: StateOut) -> dict:
    return format_sse_event("state", state.model_dump_json())


def sse_error(error: str) -> dict:
    return format_sse_event("error", error)
