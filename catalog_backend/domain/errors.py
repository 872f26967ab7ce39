class CatalogError(Exception):
    """Error surfaced to the HTTP layer as ``{code, message}`` plus a status."""

    code = "CATALOG_ERROR"
    status_code = 500

    def __init__(self, message: str, *, code: str | None = None, status_code: int | None = None):
        if code is not None:
            self.code = code
        if status_code is not None:
            self.status_code = status_code
        self.message = message
        super().__init__(message)


class ServiceNotFoundError(CatalogError):
    code = "SERVICE_NOT_FOUND"
    status_code = 404

    def __init__(self, slug: str):
        self.slug = slug
        super().__init__(f"Service '{slug}' not found")


class InvalidRequestError(CatalogError):
    """Client input rejected before any lookup; never retried."""

    status_code = 400


class WebhookError(CatalogError):
    code = "WEBHOOK_ERROR"
    status_code = 400


__all__ = ["CatalogError", "InvalidRequestError", "ServiceNotFoundError", "WebhookError"]
