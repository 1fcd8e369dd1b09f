from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar

# correlation fields stamped on every JSON log line
CONTEXT_FIELDS = ("run_id", "instance_id", "seq_no", "event_type", "ticket")

_VARS: dict[str, ContextVar[str | None]] = {
    name: ContextVar(f"trackrecord_{name}", default=None) for name in CONTEXT_FIELDS
}


def get_logging_context() -> dict[str, str | None]:
    return {name: var.get() for name, var in _VARS.items() if var.get() is not None}


@contextmanager
def with_logging_context(**context: str | int | None) -> Iterator[None]:
    """Bind correlation fields for the duration of the block; unknown names and None are skipped."""
    tokens = []
    try:
        for name, value in context.items():
            var = _VARS.get(name)
            if var is not None and value is not None:
                tokens.append((var, var.set(str(value))))
        yield
    finally:
        for var, token in reversed(tokens):
            var.reset(token)


@contextmanager
def with_event_context(event_type: str, seq_no: int) -> Iterator[None]:
    with with_logging_context(event_type=event_type, seq_no=seq_no):
        yield
