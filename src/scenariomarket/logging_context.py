from __future__ import annotations

from collections.abc import Iterator
from contextlib import ExitStack, contextmanager
from contextvars import ContextVar

CONTEXT_FIELDS = ("request_id", "operation", "scenario_id", "user_id")

_request_id: ContextVar[str | None] = ContextVar("request_id", default=None)
_operation: ContextVar[str | None] = ContextVar("operation", default=None)
_scenario_id: ContextVar[str | None] = ContextVar("scenario_id", default=None)
_user_id: ContextVar[str | None] = ContextVar("user_id", default=None)

_VARS_BY_FIELD: dict[str, ContextVar[str | None]] = {
    "request_id": _request_id,
    "operation": _operation,
    "scenario_id": _scenario_id,
    "user_id": _user_id,
}


def get_logging_context() -> dict[str, str | None]:
    """Fields currently bound for this thread/task; unset fields are omitted."""

    return {
        name: value
        for name, var in _VARS_BY_FIELD.items()
        if (value := var.get()) is not None
    }


@contextmanager
def _bound(var: ContextVar[str | None], value: str) -> Iterator[None]:
    token = var.set(value)
    try:
        yield
    finally:
        var.reset(token)


@contextmanager
def with_logging_context(**context: str | None) -> Iterator[None]:
    """Bind correlation fields for the duration of the block.

    Unknown names and ``None`` values are ignored, so an outer binding survives a
    nested block that does not know the value.
    """

    with ExitStack() as stack:
        for name, value in context.items():
            var = _VARS_BY_FIELD.get(name)
            if var is not None and value is not None:
                stack.enter_context(_bound(var, value))
        yield


@contextmanager
def with_operation_context(
    operation: str,
    *,
    scenario_id: str | None = None,
    user_id: str | None = None,
    request_id: str | None = None,
) -> Iterator[None]:
    with with_logging_context(
        operation=operation,
        scenario_id=scenario_id,
        user_id=user_id,
        request_id=request_id,
    ):
        yield
