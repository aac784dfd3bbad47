import json

import httpx
import pytest

from capi_relay.app import create_app
from capi_relay.config import RelayConfig

ALLOWED_ORIGIN = 'https://www.ai-business-engine.com'


class Upstream:
    """Stand-in for Meta / Make: records requests and replays a canned reply."""

    def __init__(self):
        self.requests = []
        self.status = 200
        self.body = {'events_received': 1, 'fbtrace_id': 'trace'}
        self.error = None

    def __call__(self, request):
        self.requests.append(request)
        if self.error is not None:
            raise self.error
        if isinstance(self.body, (dict, list)):
            return httpx.Response(self.status, json=self.body)
        return httpx.Response(self.status, content=self.body)

    @property
    def last_json(self):
        return json.loads(self.requests[-1].content)


@pytest.fixture
def config():
    return RelayConfig(
        pixel_id='123456',
        access_token='secret-token',
        test_event_code='TEST123',
        allowed_origins=(ALLOWED_ORIGIN,),
        make_webhook_url='https://hook.make.test/abc',
    )


@pytest.fixture
def upstream():
    return Upstream()


@pytest.fixture
def app(config, upstream):
    return create_app(config, transport=httpx.MockTransport(upstream))


@pytest.fixture
def client(app):
    return app.test_client()
