import json
import os
import re
from functools import wraps
from typing import NamedTuple, Optional

import httpx
from flask import Flask, Response, current_app, jsonify, request
from flask_cors import CORS
from prometheus_client import Counter, Histogram, generate_latest, CONTENT_TYPE_LATEST, REGISTRY
from pydantic import ValidationError
from werkzeug.exceptions import MethodNotAllowed

from .config import RelayConfig
from .errors import RelayError
from .forwarder import WebhookForwarder
from .log import configure_logging
from .meta import MetaCAPIClient
from .relay import EventRelay, require_decoded
from .validation import ThriveCartOrder, fold_form

# --------- Prometheus metrics ----------
REQUEST_COUNT = Counter('http_requests_total', 'Total HTTP requests', ['method', 'endpoint', 'http_status'])
REQUEST_LATENCY = Histogram('http_request_latency_seconds', 'Latency of HTTP requests', ['method', 'endpoint'])
events_forwarded = Counter('capi_events_forwarded_total', 'Events accepted by Meta', ['event_name'])
events_blocked = Counter('capi_events_blocked_total', 'Events dropped by the block list', ['event_name'])


class RelayMetrics(NamedTuple):
    forwarded: Counter
    blocked: Counter


# --------- CORS ----------
# Methods advertised per path, on every response including errors
CORS_METHODS = {
    '/api/capi': 'POST, OPTIONS, GET',
    '/api/funnel': 'POST, OPTIONS',
}


def exact_origins(origins):
    # flask-cors compares plain strings case-insensitively; anchored patterns keep the match exact
    return [re.compile(rf'^{re.escape(o)}\Z') for o in origins]


def set_cors_policy(resp):
    methods = CORS_METHODS.get(request.path)
    if methods:
        resp.headers['Vary'] = 'Origin'
        resp.headers['Access-Control-Allow-Methods'] = methods
        resp.headers['Access-Control-Allow-Headers'] = 'Content-Type'
    return resp


# --------- Responses ----------

def send_json(code, obj):
    return jsonify(obj), code


def no_content():
    resp = Response(status=204)
    del resp.headers['Content-Type']
    return resp


# --------- Decorator for metrics ----------
def monitor(path):
    def deco(f):
        @wraps(f)
        def wrapped(*args, **kwargs):
            method = request.method
            with REQUEST_LATENCY.labels(method, path).time():
                try:
                    resp = f(*args, **kwargs)
                except RelayError as e:
                    REQUEST_COUNT.labels(method, path, str(e.status)).inc()
                    raise
                except Exception:
                    REQUEST_COUNT.labels(method, path, '500').inc()
                    raise
            status = resp[1] if isinstance(resp, tuple) else resp.status_code
            REQUEST_COUNT.labels(method, path, str(status)).inc()
            return resp
        return wrapped
    return deco


def relay_response(result):
    if result.status == 204:
        return no_content()
    return send_json(result.status, result.payload)


def create_app(config: Optional[RelayConfig] = None,
               transport: Optional[httpx.BaseTransport] = None) -> Flask:
    """Build the relay application.

    ``transport`` replaces the network layer of both outbound clients
    (Meta and the Make webhook); tests pass an ``httpx.MockTransport``.
    """
    config = config or RelayConfig.from_env()

    app = Flask(__name__)
    app.config['RELAY_CONFIG'] = config
    app.extensions['event_relay'] = EventRelay(
        config,
        MetaCAPIClient(config, transport=transport),
        metrics=RelayMetrics(events_forwarded, events_blocked),
    )
    app.extensions['webhook_forwarder'] = WebhookForwarder(
        config.make_webhook_url, timeout=config.upstream_timeout, transport=transport
    )

    # Registered before CORS() so it runs after flask-cors and has the last word
    app.after_request(set_cors_policy)
    CORS(
        app,
        resources={r'/api/*': {'origins': exact_origins(config.allowed_origins)}},
        methods=['GET', 'POST', 'OPTIONS'],
        allow_headers=['Content-Type'],
        vary_header=False,
    )

    register_error_handlers(app)
    register_routes(app)
    return app


def register_error_handlers(app):
    @app.errorhandler(RelayError)
    def relay_error(e):
        return send_json(e.status, {'ok': False, 'error': e.message})

    @app.errorhandler(MethodNotAllowed)
    def method_not_allowed(e):
        resp = jsonify({'ok': False, 'error': 'Method not allowed'})
        resp.status_code = 405
        allow = e.get_response().headers.get('Allow')
        if allow:
            resp.headers['Allow'] = allow
        return resp


# --------- Endpoints ----------

def register_routes(app):

    @app.route('/metrics')
    def metrics():
        return generate_latest(REGISTRY), 200, {'Content-Type': CONTENT_TYPE_LATEST}

    @app.route('/api/capi', methods=['GET', 'OPTIONS', 'POST'])
    @monitor('/api/capi')
    def capi():
        if request.method == 'OPTIONS':
            return no_content()

        if request.method == 'GET':
            if 'ping' in request.args:
                return send_json(200, {'ok': True, 'ping': 'pong'})
            return send_json(405, {'ok': False, 'error': 'Use POST for events'})

        if request.method != 'POST':
            return send_json(405, {'ok': False, 'error': 'Method not allowed'})

        relay = current_app.extensions['event_relay']
        result = relay.relay(
            request.get_data(),
            headers=request.headers,
            query=request.args,
            remote_addr=request.remote_addr,
        )
        return relay_response(result)

    @app.route('/api/funnel', methods=['OPTIONS', 'POST'])
    @monitor('/api/funnel')
    def funnel():
        if request.method == 'OPTIONS':
            return no_content()

        forwarder = current_app.extensions['webhook_forwarder']
        forwarder.require_url()
        payload = require_decoded(request.get_data())
        ok = forwarder.forward(payload)
        return send_json(200 if ok else 502, {'ok': ok})

    @app.route('/api/thrivecart', methods=['POST'])
    @monitor('/api/thrivecart')
    def thrivecart():
        relay = current_app.extensions['event_relay']
        # ThriveCart posts form-encoded webhooks; JSON bodies are accepted too
        if request.form:
            body = fold_form(request.form.to_dict())
        else:
            body = require_decoded(request.get_data())
        try:
            order = ThriveCartOrder.model_validate(body)
        except ValidationError as e:
            return send_json(400, {'ok': False, 'error': json_errors(e)})

        result = relay.relay_order(order, headers=request.headers, remote_addr=request.remote_addr)
        return relay_response(result)


def json_errors(e: ValidationError):
    return json.loads(e.json(include_url=False))


# --------- Flask init ----------
app = create_app()


def main():
    configure_logging(os.getenv('LOG_LEVEL', 'INFO'))
    app.run(host='0.0.0.0', port=int(os.getenv('PORT', '5000')))


if __name__ == '__main__':
    main()
