"""
Custom exception classes for structured error handling.
"""

from fastapi import HTTPException, status
import logging
from functools import wraps

from storesync.core.conflict_resolver import ConflictNotFoundError, ConflictAlreadyResolvedError
from storesync.core.orchestrator import RunNotFoundError
from storesync.core.queue_processor import TenantHaltedError
from storesync.core.sync_queue import QueueFullError
from storesync.core.webhook_ingestion import WebhookSignatureError, WebhookPayloadError
from storesync.integrations.base import ConnectorError

logger = logging.getLogger(__name__)


class SyncAPIException(HTTPException):
    """Base exception for all StoreSync API errors."""

    def __init__(self, status_code: int, detail: str, error_code: str = None, headers: dict = None):
        super().__init__(status_code=status_code, detail=detail, headers=headers)
        self.error_code = error_code or self.__class__.__name__


class ValidationError(SyncAPIException):
    """Raised when request validation fails."""

    def __init__(self, detail: str, field: str = None):
        super().__init__(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Validation error: {detail}" + (f" (field: {field})" if field else ""),
            error_code="VALIDATION_ERROR"
        )


class AuthenticationError(SyncAPIException):
    """Raised when authentication fails."""

    def __init__(self, detail: str = "Authentication required"):
        super().__init__(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=detail,
            error_code="AUTH_ERROR",
            headers={"WWW-Authenticate": "Bearer"}
        )


class SignatureError(SyncAPIException):
    """Raised when a webhook signature does not verify."""

    def __init__(self, detail: str = "Invalid webhook signature"):
        super().__init__(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=detail,
            error_code="INVALID_SIGNATURE"
        )


class NotFoundError(SyncAPIException):
    """Raised when a tenant, run or conflict does not exist."""

    def __init__(self, resource: str, identifier: str):
        super().__init__(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"{resource} '{identifier}' not found",
            error_code=f"{resource.upper().replace(' ', '_')}_NOT_FOUND"
        )


class StateConflictError(SyncAPIException):
    """Raised when the request conflicts with the current state."""

    def __init__(self, detail: str):
        super().__init__(
            status_code=status.HTTP_409_CONFLICT,
            detail=detail,
            error_code="STATE_CONFLICT"
        )


class PlatformHaltedError(SyncAPIException):
    """Raised when the tenant's platform is halted by a fatal error."""

    def __init__(self, detail: str):
        super().__init__(
            status_code=status.HTTP_423_LOCKED,
            detail=detail,
            error_code="PLATFORM_HALTED"
        )


class QueueFullAPIError(SyncAPIException):
    """Raised when the tenant's queue cannot take more items."""

    def __init__(self, detail: str):
        super().__init__(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=detail,
            error_code="QUEUE_FULL",
            headers={"Retry-After": "60"}
        )


class RemotePlatformError(SyncAPIException):
    """Raised when a remote platform call made on behalf of the request fails."""

    def __init__(self, detail: str):
        super().__init__(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail=detail,
            error_code="REMOTE_PLATFORM_ERROR"
        )


def handle_api_errors(func):
    """
    Decorator to convert engine exceptions into HTTP responses.
    """
    @wraps(func)
    async def wrapper(*args, **kwargs):
        try:
            return await func(*args, **kwargs)
        except HTTPException:
            # SyncAPIException and FastAPI exceptions pass through
            raise
        except RunNotFoundError as e:
            raise NotFoundError("Sync run", str(e))
        except ConflictNotFoundError as e:
            raise NotFoundError("Conflict", str(e))
        except ConflictAlreadyResolvedError as e:
            raise StateConflictError(str(e))
        except TenantHaltedError as e:
            raise PlatformHaltedError(str(e))
        except QueueFullError as e:
            raise QueueFullAPIError(str(e))
        except WebhookSignatureError as e:
            logger.warning(f"Rejected webhook: {e}")
            raise SignatureError()
        except WebhookPayloadError as e:
            raise ValidationError(detail=str(e))
        except ConnectorError as e:
            logger.error(f"Remote call failed in {func.__name__}: {e}")
            raise RemotePlatformError(str(e))
        except ValueError as e:
            raise ValidationError(detail=str(e))
        except KeyError as e:
            raise ValidationError(detail=f"Missing required field: {str(e)}")
        except Exception as e:
            logger.error(f"Unexpected error in {func.__name__}: {str(e)}", exc_info=True)
            raise SyncAPIException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                detail="An unexpected error occurred. Please try again later.",
                error_code="INTERNAL_ERROR"
            )

    return wrapper
