"""Event Relay: normalizes inbound advertising events and forwards them to Meta.

The POST pipeline is strictly linear:

    credentials check -> decode -> normalize -> enrich -> filter
    -> (204 when nothing is left) -> test flag -> upstream call

Every failure is raised as a :class:`~capi_relay.errors.RelayError` and is
terminal for the request. Nothing is retried and no partial batch is sent.
"""
import hashlib
import json
import logging
import time
from typing import Any, Dict, List, Mapping, NamedTuple, Optional, Tuple, Union

from pydantic import BaseModel

from .config import RelayConfig
from .errors import ConfigurationError, InvalidPayload
from .meta import MetaCAPIClient

logger = logging.getLogger(__name__)

IDENTITY_KEY = 'user_data'
# Only valid inside user_data in the upstream schema
RELOCATED_FIELDS = ('client_ip_address', 'client_user_agent')
# Meta's standard events; anything else is counted as 'other' to keep metric labels bounded
STANDARD_EVENTS = frozenset({
    'AddPaymentInfo', 'AddToCart', 'AddToWishlist', 'CompleteRegistration', 'Contact',
    'CustomizeProduct', 'Donate', 'FindLocation', 'InitiateCheckout', 'Lead', 'PageView',
    'Purchase', 'Schedule', 'Search', 'StartTrial', 'SubmitApplication', 'Subscribe',
    'ViewContent',
})


# --------- Body decoding ----------

class Decoded(BaseModel):
    value: Any


class DecodeFailure(BaseModel):
    reason: str


DecodeResult = Union[Decoded, DecodeFailure]


def decode_body(raw) -> DecodeResult:
    """Decode a request body that may already be parsed or still be raw text.

    Missing or blank text decodes to an empty object.
    """
    if raw is None:
        return Decoded(value={})
    if isinstance(raw, (dict, list)):
        return Decoded(value=raw)
    if isinstance(raw, bytes):
        try:
            raw = raw.decode('utf-8')
        except UnicodeDecodeError as e:
            return DecodeFailure(reason=str(e))
    if not raw.strip():
        return Decoded(value={})
    try:
        return Decoded(value=json.loads(raw))
    except ValueError as e:
        return DecodeFailure(reason=str(e))


def require_decoded(raw) -> Any:
    result = decode_body(raw)
    if isinstance(result, DecodeFailure):
        logger.info(f"[CAPI Relay] rejected body: {result.reason}")
        raise InvalidPayload('Invalid JSON body')
    return result.value


# --------- Normalization ----------

def normalize_events(body: Any) -> List[Dict[str, Any]]:
    """Collapse ``{"events": [...]}`` / ``{"event": {...}}`` into one ordered list."""
    if isinstance(body, dict) and isinstance(body.get('events'), list):
        events = body['events']
    elif isinstance(body, dict) and isinstance(body.get('event'), dict):
        events = [body['event']]
    else:
        raise InvalidPayload("Missing 'events' array or 'event' object")

    if not all(isinstance(e, dict) for e in events):
        raise InvalidPayload('Each event must be an object')
    return list(events)


def client_signals(headers: Mapping[str, str], remote_addr: Optional[str]) -> Tuple[str, str]:
    """Best-effort client IP and user agent for the request."""
    forwarded = (headers.get('x-forwarded-for') or '').split(',')[0].strip()
    ip = forwarded or remote_addr or ''
    ua = headers.get('user-agent') or ''
    return ip, ua


def metric_event_name(name) -> str:
    return name if isinstance(name, str) and name in STANDARD_EVENTS else 'other'


def sha256_hash(value: str) -> str:
    return hashlib.sha256(value.encode('utf-8')).hexdigest()


def enrich_event(event: Dict[str, Any], ip: str, ua: str) -> Dict[str, Any]:
    """Return a copy of ``event`` with identity signals placed in ``user_data``.

    Existing identity values always win: top-level duplicates are moved in
    only when the key is unset, request-derived values fill what is still
    missing, and empty candidates are never written. Plaintext email is
    hashed before it leaves the process. Every other field is kept.
    """
    e = dict(event)
    if e.get(IDENTITY_KEY) is not None and not isinstance(e[IDENTITY_KEY], dict):
        raise InvalidPayload("'user_data' must be an object")
    ud = dict(e.get(IDENTITY_KEY) or {})

    for field, candidate in zip(RELOCATED_FIELDS, (ip, ua)):
        if e.get(field) and not ud.get(field):
            ud[field] = e[field]
        if not ud.get(field) and candidate:
            ud[field] = candidate
        e.pop(field, None)

    email = ud.pop('email', None)
    if email and not ud.get('em'):
        ud['em'] = sha256_hash(str(email).strip().lower())

    e[IDENTITY_KEY] = ud
    return e


# --------- Relay ----------

class RelayResult(NamedTuple):
    status: int
    payload: Optional[Dict[str, Any]] = None


class EventRelay:
    def __init__(self, config: RelayConfig, client: MetaCAPIClient, metrics=None):
        self.config = config
        self.client = client
        self.metrics = metrics

    def is_blocked(self, event: Dict[str, Any]) -> bool:
        name = event.get('event_name')
        return isinstance(name, str) and name in self.config.blocked_events

    def filter_blocked(self, events: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        kept = [e for e in events if not self.is_blocked(e)]
        blocked = len(events) - len(kept)
        if blocked > 0:
            logger.info(f"[CAPI Relay] skipped {blocked} blocked event(s)")
            if self.metrics:
                for e in events:
                    if self.is_blocked(e):
                        self.metrics.blocked.labels(event_name=e['event_name']).inc()
        return kept

    @staticmethod
    def wants_test_mode(query: Mapping[str, str], headers: Mapping[str, str]) -> bool:
        return query.get('test') == '1' or headers.get('x-meta-test') == '1'

    def build_batch(self, events: List[Dict[str, Any]], test_mode: bool) -> Dict[str, Any]:
        batch = {'data': events}
        if test_mode:
            if self.config.test_event_code:
                batch['test_event_code'] = self.config.test_event_code
            else:
                logger.debug('[CAPI Relay] test mode requested but META_TEST_EVENT_CODE is not set')
        return batch

    def relay(self, body, headers: Mapping[str, str], query: Mapping[str, str],
              remote_addr: Optional[str] = None) -> RelayResult:
        """Run the full POST pipeline for one request."""
        self._require_credentials()
        events = normalize_events(require_decoded(body))
        return self._forward(events, headers, remote_addr, self.wants_test_mode(query, headers))

    def relay_order(self, order, headers: Mapping[str, str],
                    remote_addr: Optional[str] = None) -> RelayResult:
        """Turn a checkout order into a Purchase event and relay it."""
        self._require_credentials()
        event = order.to_event(int(time.time()))
        return self._forward([event], headers, remote_addr, test_mode=False)

    def _require_credentials(self):
        if not self.config.has_meta_credentials:
            raise ConfigurationError('Server missing META env vars')

    def _forward(self, events, headers, remote_addr, test_mode) -> RelayResult:
        ip, ua = client_signals(headers, remote_addr)
        events = self.filter_blocked([enrich_event(e, ip, ua) for e in events])

        # Nothing left to send: never hand Meta an empty batch
        if not events:
            return RelayResult(204)

        result = self.client.send(self.build_batch(events, test_mode))
        if result.ok and self.metrics:
            for e in events:
                self.metrics.forwarded.labels(event_name=metric_event_name(e.get('event_name'))).inc()
        return RelayResult(200 if result.ok else 400, {'ok': result.ok, 'meta': result.body})
