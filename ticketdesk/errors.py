from __future__ import annotations


class QrBoxError(ValueError):
    """QR box is out of bounds or has no area; ``values`` echoes what was checked."""

    def __init__(self, message: str, **values: int) -> None:
        super().__init__(message)
        self.values = values


class TemplateError(ValueError):
    pass


class BatchSizeError(ValueError):
    pass


class TicketRenderError(RuntimeError):
    def __init__(self, token: str, cause: Exception) -> None:
        super().__init__(f"Failed to render ticket {token}: {cause}")
        self.token = token
        self.cause = cause


class DocumentAssemblyError(RuntimeError):
    def __init__(self, pdf_error: Exception, zip_error: Exception) -> None:
        super().__init__(f"PDF assembly failed ({pdf_error}); ZIP fallback failed ({zip_error})")
        self.pdf_error = pdf_error
        self.zip_error = zip_error
