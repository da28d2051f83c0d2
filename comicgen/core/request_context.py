import contextvars
from contextlib import contextmanager

request_id_var: contextvars.ContextVar[str | None] = contextvars.ContextVar("request_id", default=None)
stage_var: contextvars.ContextVar[str | None] = contextvars.ContextVar("stage", default=None)
frame_id_var: contextvars.ContextVar[str | None] = contextvars.ContextVar("frame_id", default=None)


def set_request_id(request_id: str) -> contextvars.Token:
    """Store the current request ID in a context variable."""
    return request_id_var.set(request_id)


def reset_request_id(token: contextvars.Token) -> None:
    """Reset the request ID context variable to a previous state."""
    request_id_var.reset(token)


def get_request_id() -> str | None:
    """Retrieve the current request ID from the context."""
    return request_id_var.get()


def get_stage() -> str | None:
    return stage_var.get()


def get_frame_id() -> str | None:
    return frame_id_var.get()


@contextmanager
def log_context(stage: str | None = None, frame_id: int | str | None = None):
    """Temporarily scope pipeline stage / frame context for structured logs."""
    tokens: list[tuple[contextvars.ContextVar[str | None], contextvars.Token]] = []
    if stage is not None:
        tokens.append((stage_var, stage_var.set(stage)))
    if frame_id is not None:
        tokens.append((frame_id_var, frame_id_var.set(str(frame_id))))
    try:
        yield
    finally:
        for var, token in reversed(tokens):
            var.reset(token)
