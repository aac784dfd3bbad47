"""Client for Meta's Conversions API.

One POST per relayed batch to
``https://graph.facebook.com/{version}/{pixel_id}/events?access_token=...``.
The relay only needs to know whether Meta accepted the batch, so the
response is reduced to status, success flag and parsed JSON body.
"""
import logging
from typing import Any, Dict, NamedTuple, Optional

import httpx

from .config import RelayConfig
from .errors import UpstreamTransportError

logger = logging.getLogger(__name__)


class UpstreamResult(NamedTuple):
    status_code: int
    ok: bool
    body: Any


def parse_json_or_empty(response: httpx.Response) -> Any:
    """Upstream JSON body, or {} when it is empty or malformed."""
    try:
        return response.json()
    except ValueError:
        return {}


class MetaCAPIClient:
    def __init__(self, config: RelayConfig, transport: Optional[httpx.BaseTransport] = None):
        self.config = config
        self._client = httpx.Client(timeout=config.upstream_timeout, transport=transport)

    def send(self, batch: Dict[str, Any]) -> UpstreamResult:
        """POST a batch of canonical events. Network errors are not retried.

        Raises:
            UpstreamTransportError: the request never got a response
                (connection failure, timeout).
        """
        events = batch.get('data', [])
        logger.info(
            f"[META_CAPI] Sending {len(events)} event(s) to pixel {self.config.pixel_id}",
            extra={
                'event_names': [e.get('event_name') for e in events],
                'test_mode': 'test_event_code' in batch,
            }
        )
        try:
            response = self._client.post(
                self.config.events_url,
                params={'access_token': self.config.access_token},
                json=batch,
            )
        except httpx.RequestError as e:
            logger.error(f"[META_CAPI] Network error: {e}")
            raise UpstreamTransportError(str(e) or e.__class__.__name__) from e

        body = parse_json_or_empty(response)
        if not response.is_success:
            logger.error(
                f"[META_CAPI] API error: {response.status_code}",
                extra={'response': body}
            )
        return UpstreamResult(response.status_code, response.is_success, body)

    def close(self):
        self._client.close()
