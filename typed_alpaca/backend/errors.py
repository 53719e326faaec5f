# typed_alpaca/backend/errors.py
from __future__ import annotations

from typing import Any, Optional


# ===== Exceptions of the broker layer =====
class BrokerError(Exception):
    """General broker-layer error. Carries the HTTP status/body when there is one."""

    def __init__(self, message: str, *, status_code: Optional[int] = None, body: Any = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class BrokerValidationError(BrokerError):
    """Invalid caller input (credentials, symbol/qty/side/tif, timeframe)."""


class MalformedEntityError(BrokerError, ValueError):
    """Raw entity that cannot be normalized: missing field, bad number/timestamp, unknown type."""


class BrokerNetworkError(BrokerError):
    """Network/connection failure before any HTTP response arrived."""


class BrokerHttpError(BrokerError):
    """Non-2xx REST response."""


class BrokerAuthError(BrokerHttpError):
    """Wrong keys/secret, missing credentials or insufficient permissions."""


class BrokerRateLimitError(BrokerHttpError):
    """API request limit exceeded."""


class BrokerOrderRejected(BrokerHttpError):
    """Order rejected by the broker."""


# ===== Stream =====
class StreamError(BrokerError):
    """Base for streaming errors; `code` is the control-message code if any."""

    def __init__(self, message: str, *, code: Optional[int] = None, **kwargs: Any) -> None:
        super().__init__(message, **kwargs)
        self.code = code


class StreamAuthError(StreamError):
    """Authentication rejected. Fatal for the connection; not retried automatically."""


class StreamSubscriptionError(StreamError):
    """Subscription request rejected. The connection stays up."""


class StreamProtocolError(StreamError):
    """Frame that cannot be decoded, or data arriving in a state that does not accept it."""


class StreamStateError(StreamError):
    """Illegal state transition or use of a closed session."""


class StreamTransportError(StreamError):
    """Transient socket failure; a reconnect follows."""
