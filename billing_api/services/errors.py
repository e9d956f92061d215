"""Exceptions shared by the invoice services.

Routers map each class to an HTTP status (see ``routers.invoices``).
"""


class InvoiceServiceError(Exception):
    """Base exception for invoice service errors."""

    pass


class UnauthorizedError(InvoiceServiceError):
    """No resolvable requesting user."""

    pass


class ForbiddenError(InvoiceServiceError):
    """User's role may not perform the operation."""

    pass


class NotFoundError(InvoiceServiceError):
    """Referenced entity does not exist."""

    pass


class BadRequestError(InvoiceServiceError):
    """Domain rule violated by the request."""

    pass
