import logging
from typing import Any, Optional

import httpx

from .errors import ConfigurationError, UpstreamTransportError

logger = logging.getLogger(__name__)


class WebhookForwarder:
    """Passes a JSON payload verbatim to a Make.com webhook."""

    def __init__(self, url: str, timeout: float = 10.0,
                 transport: Optional[httpx.BaseTransport] = None):
        self.url = url
        self._client = httpx.Client(timeout=timeout, transport=transport)

    def require_url(self):
        if not self.url:
            raise ConfigurationError('MAKE_WEBHOOK_URL missing')

    def forward(self, payload: Any) -> bool:
        """POST ``payload``; callers check :meth:`require_url` first."""
        try:
            r = self._client.post(self.url, json=payload)
        except httpx.RequestError as e:
            logger.exception('[Forwarder] webhook request failed')
            raise UpstreamTransportError(str(e) or e.__class__.__name__) from e
        if not r.is_success:
            logger.error(f"[Forwarder] webhook responded {r.status_code}")
        return r.is_success

    def close(self):
        self._client.close()
