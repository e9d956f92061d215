"""Structured logging helpers (PII-safe)."""

from typing import Any
from uuid import UUID


def build_log_context(
    *,
    user_id: UUID | str | None = None,
    invoice_id: UUID | str | None = None,
    role: str | None = None,
    **fields: Any,
) -> dict[str, Any]:
    """Return a log context dict for ``logger.*(..., extra=...)``.

    IDs are stringified; ``None`` values are dropped. Extra keyword fields
    are passed through as-is and must not carry personal data.
    """
    context: dict[str, Any] = {}
    if user_id:
        context["user_id"] = str(user_id)
    if invoice_id:
        context["invoice_id"] = str(invoice_id)
    if role:
        context["role"] = role
    for key, value in fields.items():
        if value is not None:
            context[key] = value
    return context
