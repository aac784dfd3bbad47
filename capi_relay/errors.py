class RelayError(Exception):
    """Terminal failure for the current request, reported as {ok: false, error}."""
    status = 500

    def __init__(self, message, status=None):
        super().__init__(message)
        self.message = message
        if status is not None:
            self.status = status


class ConfigurationError(RelayError):
    status = 500


class InvalidPayload(RelayError):
    status = 400


class UpstreamTransportError(RelayError):
    status = 500
