"""
Error Taxonomy

Every failure the service reports is a ``TrackingError``. The webhook layer
maps these onto HTTP responses and sync jobs collect them per item.
"""

from typing import Optional


class TrackingError(Exception):
    """Base class for all service errors"""


class AuthenticationError(TrackingError):
    """Webhook signature missing or mismatched"""


class ValidationError(TrackingError):
    """Payload is malformed or a value is out of range"""


class NotFoundError(TrackingError):
    """A referenced order, ticket, product or alert does not exist"""

    def __init__(self, entity: str, key: str):
        self.entity = entity
        self.key = key
        super().__init__(f"{entity} not found: {key}")


class StoreError(TrackingError):
    """A call to the backing tabular store failed"""

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)


class NotificationError(TrackingError):
    """An e-mail could not be sent"""


class UpstreamError(TrackingError):
    """The CMS could not be reached or answered with an error"""

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)
