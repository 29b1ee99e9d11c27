import logging
import threading
import time
from typing import Any, Optional

import httpx

logger = logging.getLogger(__name__)


class HTTPClient:
    """Pooled httpx client with exponential-backoff retries for outbound calls."""

    def __init__(self, timeout: float = 10.0, transport: Optional[httpx.BaseTransport] = None):
        limits = httpx.Limits(
            max_keepalive_connections=10,
            max_connections=20,
            keepalive_expiry=30.0,
        )
        # Bounded on every phase so a hung collaborator cannot hold a request forever.
        self._timeout = httpx.Timeout(timeout=timeout, connect=min(timeout, 5.0))
        self._client = httpx.Client(
            limits=limits,
            timeout=self._timeout,
            follow_redirects=True,
            transport=transport,
        )

    def post(self, url: str, **kwargs: Any) -> httpx.Response:
        return self._client.post(url, **kwargs)

    def post_with_retry(self, url: str, retries: int = 3, backoff: float = 0.5, **kwargs: Any) -> Optional[httpx.Response]:
        """POST with retries on network errors. Returns None when every attempt failed."""
        for attempt in range(retries):
            try:
                return self.post(url, **kwargs)
            except httpx.RequestError as e:
                if attempt < retries - 1:
                    wait_time = backoff * (2 ** attempt)
                    logger.warning(f"POST {url} failed ({e}); retrying in {wait_time:.2f}s")
                    time.sleep(wait_time)
                    continue
                logger.error(f"POST {url} failed after {retries} attempts: {e}")
                return None
        return None

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> "HTTPClient":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()


# Global client instance
_global_client: Optional[HTTPClient] = None
_global_lock = threading.Lock()


def get_http_client(timeout: float = 10.0) -> HTTPClient:
    """Get or create the shared HTTP client."""
    global _global_client
    with _global_lock:
        if _global_client is None:
            _global_client = HTTPClient(timeout=timeout)
        return _global_client


def cleanup_http_client() -> None:
    """Close the shared HTTP client."""
    global _global_client
    with _global_lock:
        if _global_client:
            _global_client.close()
            _global_client = None
