"""Operation Context.

Binds request, user, school and case identifiers to every log line
emitted while an operation runs. Uses contextvars, so each thread and
task sees only its own bindings.
"""

import uuid
from contextvars import ContextVar
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional


_request_id_var: ContextVar[str] = ContextVar("request_id", default="")
_user_id_var: ContextVar[str] = ContextVar("user_id", default="")
_school_id_var: ContextVar[str] = ContextVar("school_id", default="")
_case_id_var: ContextVar[str] = ContextVar("case_id", default="")
_extra_context_var: ContextVar[Optional[dict]] = ContextVar("extra_context", default=None)


def generate_request_id() -> str:
    """Generate a unique request ID using UUID4."""
    return str(uuid.uuid4())


def get_request_id() -> str:
    return _request_id_var.get()


def get_context_dict() -> dict[str, Any]:
    """Get all bound identifiers as a dictionary for log records."""
    ctx = {}
    for key, var in (
        ("request_id", _request_id_var),
        ("user_id", _user_id_var),
        ("school_id", _school_id_var),
        ("case_id", _case_id_var),
    ):
        value = var.get()
        if value:
            ctx[key] = value
    extra = _extra_context_var.get()
    if extra:
        ctx.update(extra)
    return ctx


@dataclass
class OperationContext:
    """Context manager for operation-scoped logging context.

    Example:
        with OperationContext(user_id="admin_1", school_id="sch_1"):
            logger.info("broadcasting")  # includes request_id, user_id, school_id
    """

    request_id: str = ""
    user_id: str = ""
    school_id: str = ""
    case_id: str = ""
    extra: dict[str, Any] = field(default_factory=dict)
    started_at: datetime = field(
        default_factory=lambda: datetime.now(timezone.utc)
    )

    _tokens: list = field(default_factory=list, repr=False)

    def __post_init__(self):
        if not self.request_id:
            self.request_id = generate_request_id()

    def __enter__(self) -> "OperationContext":
        self._tokens = [
            (_request_id_var, _request_id_var.set(self.request_id)),
            (_user_id_var, _user_id_var.set(self.user_id)),
            (_school_id_var, _school_id_var.set(self.school_id)),
            (_case_id_var, _case_id_var.set(self.case_id)),
            (_extra_context_var, _extra_context_var.set(self.extra.copy())),
        ]
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        for var, token in reversed(self._tokens):
            var.reset(token)
        self._tokens.clear()

    @property
    def elapsed_ms(self) -> float:
        """Milliseconds since context was created."""
        delta = datetime.now(timezone.utc) - self.started_at
        return delta.total_seconds() * 1000

    def bind(self, **kwargs: Any) -> None:
        """Add extra key-value pairs to the active context."""
        if "case_id" in kwargs:
            self.case_id = kwargs.pop("case_id")
            _case_id_var.set(self.case_id)
        current = _extra_context_var.get() or {}
        _extra_context_var.set({**current, **kwargs})
        self.extra.update(kwargs)
