"""
Connector Adapter interface for remote platforms
Uniform fetch/push capability plus the error taxonomy every adapter raises
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from email.utils import parsedate_to_datetime
from typing import Dict, Any, List, Optional, Callable, Awaitable, Tuple
import logging

import httpx

from storesync.core.models import Operation, utc_now, to_naive_utc

# Opaque per-(platform, entity type) pull position, usually an ISO timestamp
Cursor = Optional[str]

# async (entity_type, id) -> counterpart id or None
IdResolver = Callable[[str, str], Awaitable[Optional[str]]]


@dataclass
class LocalEntity:
    """Snapshot of a local record as handed to an adapter"""
    entity_type: str
    entity_id: str
    data: Dict[str, Any] = field(default_factory=dict)
    updated_at: Optional[datetime] = None
    deleted: bool = False


@dataclass
class RemoteEntity:
    """Normalized record returned by a remote platform"""
    entity_type: str
    remote_id: str
    data: Dict[str, Any] = field(default_factory=dict)
    updated_at: Optional[datetime] = None
    deleted: bool = False
    version: Optional[str] = None  # platform concurrency token (QuickBooks SyncToken)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'entity_type': self.entity_type,
            'remote_id': self.remote_id,
            'data': self.data,
            'updated_at': self.updated_at.isoformat() if self.updated_at else None,
            'deleted': self.deleted,
            'version': self.version
        }

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> 'RemoteEntity':
        updated_at = payload.get('updated_at')
        return cls(
            entity_type=payload['entity_type'],
            remote_id=str(payload['remote_id']),
            data=dict(payload.get('data') or {}),
            updated_at=parse_timestamp(updated_at) if updated_at else None,
            deleted=bool(payload.get('deleted', False)),
            version=payload.get('version')
        )


@dataclass
class Page:
    """One page of a fetch"""
    entities: List[RemoteEntity]
    next_cursor: Cursor = None
    has_more: bool = False


class ConnectorError(Exception):
    """Base class for remote call failures"""
    error_class = "connector"

    def __init__(self, message: str, status_code: Optional[int] = None, detail: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.detail = detail

    def __str__(self):
        if self.status_code:
            return f"{self.message} (HTTP {self.status_code})"
        return self.message


class RetryableError(ConnectorError):
    """Transient failure: timeout, 5xx, connection refused"""
    error_class = "retryable"


class RateLimitedError(RetryableError):
    """Remote throttled the call; retry_after is the server hint in seconds"""
    error_class = "rate_limited"

    def __init__(self, message: str, retry_after: Optional[float] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.retry_after = retry_after


class UnresolvedReferenceError(RetryableError):
    """A referenced entity has no remote counterpart yet"""
    error_class = "unresolved_reference"


class AuthExpiredError(ConnectorError):
    """Credentials rejected (401); one refresh is allowed"""
    error_class = "auth_expired"


class NonRetryableError(ConnectorError):
    """Item-level rejection (400/404/422)"""
    error_class = "non_retryable"


class ValidationFailure(NonRetryableError):
    """Local record violates platform constraints; detected before any call"""
    error_class = "validation"

    def __init__(self, message: str, errors: Optional[List[str]] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.errors = errors or []


class InternalError(NonRetryableError):
    """Unexpected exception while handling an item (malformed data or a bug)"""
    error_class = "internal"


class RemoteConflictError(ConnectorError):
    """Remote reports a concurrent modification (409, stale object)"""
    error_class = "remote_conflict"


class FatalError(ConnectorError):
    """Tenant/platform misconfiguration or unusable credentials"""
    error_class = "fatal"


def parse_retry_after(value: Optional[str]) -> Optional[float]:
    """Retry-After header as seconds (delta or HTTP date)"""
    if not value:
        return None
    value = value.strip()
    try:
        return max(0.0, float(value))
    except ValueError:
        pass
    try:
        when = to_naive_utc(parsedate_to_datetime(value))
    except (TypeError, ValueError):
        return None
    return max(0.0, (when - utc_now()).total_seconds())


def parse_timestamp(value: Any) -> Optional[datetime]:
    """ISO-8601 string (with or without Z/offset) to naive UTC"""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return to_naive_utc(value)
    text = str(value).strip()
    if text.endswith('Z'):
        text = text[:-1] + '+00:00'
    return to_naive_utc(datetime.fromisoformat(text))


def encode_cursor(since: Optional[str], position: int) -> str:
    """Pagination cursor: '<since>|<position>'"""
    return f"{since or ''}|{position}"


def decode_cursor(cursor: Cursor, first_position: int = 1) -> Tuple[Optional[str], int]:
    """Split a cursor into (since timestamp, position); plain timestamps start at first_position"""
    if not cursor:
        return None, first_position
    since, sep, position = cursor.rpartition('|')
    if not sep:
        return cursor, first_position
    try:
        return since or None, int(position)
    except ValueError:
        return cursor, first_position


def format_cursor_time(value: datetime) -> str:
    return to_naive_utc(value).replace(microsecond=0).isoformat()


def error_from_status(status_code: int, message: str, detail: Optional[str] = None,
                      retry_after: Optional[float] = None) -> ConnectorError:
    """Map an HTTP error status onto the engine taxonomy"""
    if status_code == 401:
        return AuthExpiredError(message, status_code=status_code, detail=detail)
    if status_code == 403:
        return FatalError(message, status_code=status_code, detail=detail)
    if status_code == 409:
        return RemoteConflictError(message, status_code=status_code, detail=detail)
    if status_code == 429:
        return RateLimitedError(message, retry_after=retry_after, status_code=status_code, detail=detail)
    if status_code >= 500:
        return RetryableError(message, status_code=status_code, detail=detail)
    if status_code in (408, 425):
        return RetryableError(message, status_code=status_code, detail=detail)
    return NonRetryableError(message, status_code=status_code, detail=detail)


class ConnectorAdapter(ABC):
    """
    Abstract base class for remote platform adapters

    Adapters translate between local records and one platform's API. They
    never retry: rate limiting, circuit breaking and backoff belong to the
    queue processor.
    """

    platform: str = ""
    supported_entities: Tuple[str, ...] = ()

    def __init__(self, config: Dict[str, Any], http_client: Optional[httpx.AsyncClient] = None):
        self.config = config
        self.timeout = float(config.get('timeout_seconds', 30))
        self._client = http_client
        self._owns_client = http_client is None
        self.logger = logging.getLogger(f"{__name__}.{self.__class__.__name__}")

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    def supports(self, entity_type: str) -> bool:
        return entity_type in self.supported_entities

    def _require_supported(self, entity_type: str):
        if not self.supports(entity_type):
            raise ValidationFailure(f"{self.platform} does not sync entity type '{entity_type}'")

    def aliases(self, entity_type: str, remote_id: str) -> List[Tuple[str, str]]:
        """Other (entity_type, remote_id) pairs the same remote object may be mapped under"""
        return []

    @abstractmethod
    async def fetch(self, entity_type: str, since: Cursor = None) -> Page:
        """
        Fetch one page of entities changed since the cursor

        Returns:
            Page whose next_cursor resumes the listing
        """
        pass

    @abstractmethod
    async def push(self, operation: Operation, entity: LocalEntity, remote_id: Optional[str] = None,
                   resolver: Optional[IdResolver] = None) -> str:
        """
        Apply a local change remotely

        Args:
            operation: create, update or delete
            entity: local snapshot; data may carry 'archive': True for soft deletes
            remote_id: counterpart id when already mapped
            resolver: translates local references into remote ids

        Returns:
            Remote id of the affected entity

        Raises:
            ConnectorError subclasses
        """
        pass

    @abstractmethod
    async def get_remote(self, entity_type: str, remote_id: str) -> Optional[RemoteEntity]:
        """Current remote version, or None when it no longer exists"""
        pass

    @abstractmethod
    def validate(self, entity_type: str, record: Dict[str, Any], partial: bool = False) -> None:
        """Check platform constraints before any network call (raises ValidationFailure)"""
        pass

    async def refresh_credentials(self) -> bool:
        """Refresh expired credentials; False when the platform has nothing to refresh"""
        return False

    async def to_local(self, entity: RemoteEntity, reverse_resolver: Optional[IdResolver] = None) -> Dict[str, Any]:
        """Local field layout of a remote record"""
        return dict(entity.data)

    async def _request(self, method: str, url: str, **kwargs) -> httpx.Response:
        """Single HTTP call with transport errors mapped onto the taxonomy"""
        try:
            response = await self.client.request(method, url, timeout=self.timeout, **kwargs)
        except httpx.TimeoutException as e:
            raise RetryableError(f"{self.platform} request timed out: {method} {url}") from e
        except httpx.TransportError as e:
            raise RetryableError(f"{self.platform} connection failed: {e}") from e

        if response.status_code >= 400:
            raise self._error_from_response(response)
        return response

    def _error_from_response(self, response: httpx.Response) -> ConnectorError:
        retry_after = parse_retry_after(response.headers.get('Retry-After'))
        return error_from_status(
            response.status_code,
            f"{self.platform} rejected {response.request.method} {response.request.url.path}",
            detail=response.text[:1000],
            retry_after=retry_after
        )

    async def aclose(self):
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None
