"""Context variables injected into every log record."""

from contextvars import ContextVar
from typing import Dict, Optional

_domain: ContextVar[Optional[str]] = ContextVar("log_domain", default=None)
_stage: ContextVar[Optional[str]] = ContextVar("log_stage", default=None)
_run_id: ContextVar[Optional[str]] = ContextVar("log_run_id", default=None)
_form_id: ContextVar[Optional[str]] = ContextVar("log_form_id", default=None)

_VARS = {
    "domain": _domain,
    "stage": _stage,
    "run_id": _run_id,
    "form_id": _form_id,
}


def set_log_context(
    domain: Optional[str] = None,
    stage: Optional[str] = None,
    run_id: Optional[str] = None,
    form_id: Optional[str] = None,
) -> None:
    """
    Set context fields for the current task.

    Only the given fields are changed. asyncio tasks copy the context on
    creation, so a form id set inside a pull job never leaks into its
    siblings.
    """
    if domain is not None:
        _domain.set(domain)
    if stage is not None:
        _stage.set(stage)
    if run_id is not None:
        _run_id.set(run_id)
    if form_id is not None:
        _form_id.set(form_id)


def get_log_context() -> Dict[str, Optional[str]]:
    """Return a snapshot of all context fields."""
    return {name: var.get() for name, var in _VARS.items()}


def clear_log_context() -> None:
    """Reset all context fields."""
    for var in _VARS.values():
        var.set(None)
