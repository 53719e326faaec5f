from abc import ABC, abstractmethod
from typing import Any, Dict, Mapping, Optional, Union


class HttpTransport(ABC):
    @abstractmethod
    def request(
        self,
        method: str,
        url: str,
        *,
        params: Optional[Mapping[str, Any]] = None,
        json: Any = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> Any: ...  # decoded JSON (None on empty body); raises BrokerHttpError / BrokerNetworkError

    def close(self) -> None:
        return None


class RateLimiter(ABC):
    @abstractmethod
    def acquire(self) -> None: ...  # blocks until the next request may go out


class WebSocketTransport(ABC):
    """One socket connection. A new instance is created for every (re)connect."""

    @abstractmethod
    async def connect(self, url: str) -> None: ...

    @abstractmethod
    async def send(self, frame: str) -> None: ...

    @abstractmethod
    async def receive(self) -> Optional[Union[str, bytes]]: ...  # next frame; None once the peer closed

    @abstractmethod
    async def close(self) -> None: ...
