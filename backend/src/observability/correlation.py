"""Correlation context for connector executions.

Holds the execution, tenant, instance and connector ids of the call in
progress in a context variable, so every log record emitted while the
call runs (in any coroutine it awaits) can be stamped with them.
"""

from contextlib import contextmanager
from contextvars import ContextVar
from typing import Iterator, Optional

CORRELATION_FIELDS = ("execution_id", "tenant_id", "instance_id", "connector_id")

# Context variable for correlation ids (async-safe)
correlation_var: ContextVar[Optional[dict[str, str]]] = ContextVar("connector_correlation", default=None)


def get_correlation() -> dict[str, str]:
    """Get current correlation ids.

    Returns:
        dict: Set ids only; empty outside an execution
    """
    return dict(correlation_var.get() or {})


def get_execution_id() -> Optional[str]:
    return get_correlation().get("execution_id")


@contextmanager
def correlation_context(**ids: Optional[str]) -> Iterator[dict[str, str]]:
    """Bind correlation ids for the duration of a block.

    Ids nest: values set by an outer block stay visible unless overridden.

    Example:
        with correlation_context(execution_id=execution.id, tenant_id=context.tenant_id):
            logger.info("Calling transport")
    """
    unknown = set(ids) - set(CORRELATION_FIELDS)
    if unknown:
        raise ValueError(f"Unknown correlation fields: {', '.join(sorted(unknown))}")

    merged = {**get_correlation(), **{key: str(value) for key, value in ids.items() if value is not None}}
    token = correlation_var.set(merged)
    try:
        yield merged
    finally:
        correlation_var.reset(token)
