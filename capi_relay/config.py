import os
from typing import FrozenSet, Mapping, Optional, Tuple
from urllib.parse import quote

from pydantic import BaseModel, ConfigDict, Field

GRAPH_BASE_URL = 'https://graph.facebook.com'

# Noisy, non-billable event names that are never forwarded to Meta
DEFAULT_BLOCKED_EVENTS = frozenset({'VideoProgress', 'VideoSummary'})


def split_origins(raw: Optional[str]) -> Tuple[str, ...]:
    return tuple(s.strip() for s in (raw or '').split(',') if s.strip())


class RelayConfig(BaseModel):
    """Process-wide settings, built once at start-up and handed to create_app."""
    model_config = ConfigDict(frozen=True)

    pixel_id: str = ''
    access_token: str = ''
    test_event_code: str = ''
    graph_api_version: str = 'v18.0'
    allowed_origins: Tuple[str, ...] = ()
    blocked_events: FrozenSet[str] = DEFAULT_BLOCKED_EVENTS
    make_webhook_url: str = ''
    upstream_timeout: float = Field(default=10.0, gt=0)

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> 'RelayConfig':
        env = os.environ if environ is None else environ
        return cls(
            pixel_id=env.get('META_PIXEL_ID', ''),
            access_token=env.get('META_ACCESS_TOKEN', ''),
            test_event_code=env.get('META_TEST_EVENT_CODE', ''),
            graph_api_version=env.get('META_GRAPH_API_VERSION') or 'v18.0',
            allowed_origins=split_origins(env.get('CORS_ALLOW_ORIGIN')),
            make_webhook_url=env.get('MAKE_WEBHOOK_URL', ''),
            upstream_timeout=float(env.get('UPSTREAM_TIMEOUT_SECONDS') or 10.0),
        )

    @property
    def has_meta_credentials(self) -> bool:
        return bool(self.pixel_id and self.access_token)

    @property
    def events_url(self) -> str:
        return f"{GRAPH_BASE_URL}/{self.graph_api_version}/{quote(self.pixel_id, safe='')}/events"
