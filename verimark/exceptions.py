"""
Exception hierarchy for Verimark.

Every error that can reach the HTTP boundary derives from VerimarkError and
carries a stable ``code`` plus the status the API should answer with.
Per-item composition failures use QrEmbeddingError, which the batch driver
converts into a failed result instead of letting it propagate.
"""

from typing import Any, Dict, Optional


class VerimarkError(Exception):
    """Base exception for errors surfaced to callers."""

    status_code = 500
    code = "INTERNAL_ERROR"

    def __init__(self, message: str, code: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        if code:
            self.code = code

    def to_response(self) -> Dict[str, Any]:
        return {"success": False, "error": self.message, "code": self.code}


class UnauthorizedError(VerimarkError):
    status_code = 401
    code = "UNAUTHORIZED"

    def __init__(self, message: str = "Unauthorized") -> None:
        super().__init__(message)


class RequestValidationError(VerimarkError):
    """Missing or malformed request fields. No work has been performed."""

    status_code = 400
    code = "INVALID_REQUEST"


class NoActiveTemplateError(VerimarkError):
    """The company has no active design template for embedded exports."""

    status_code = 400
    code = "NO_TEMPLATE"

    def __init__(self, message: str = "No active template found. Please set up a banner template first.") -> None:
        super().__init__(message)


class ProductsNotFoundError(VerimarkError):
    status_code = 404
    code = "NO_PRODUCTS"

    def __init__(self, message: str = "No products found") -> None:
        super().__init__(message)


class CompanyNotFoundError(VerimarkError):
    status_code = 404
    code = "COMPANY_NOT_FOUND"

    def __init__(self, message: str = "Company not found") -> None:
        super().__init__(message)


class DuplicateProductError(VerimarkError):
    status_code = 409
    code = "DUPLICATE_PRODUCT"


class TemplateNotFoundError(VerimarkError):
    """Raised for missing templates and for templates owned by another company."""

    status_code = 404
    code = "TEMPLATE_NOT_FOUND"

    def __init__(self, message: str = "Template not found or unauthorized") -> None:
        super().__init__(message)


class StorageError(VerimarkError):
    status_code = 502
    code = "STORAGE_ERROR"


class LedgerError(VerimarkError):
    status_code = 502
    code = "LEDGER_ERROR"


class ExportError(VerimarkError):
    status_code = 500
    code = "EXPORT_ERROR"


class QrEmbeddingError(Exception):
    """A single product's QR composition failed."""

    def __init__(self, message: str, product_id: Optional[str] = None) -> None:
        super().__init__(message)
        self.product_id = product_id
