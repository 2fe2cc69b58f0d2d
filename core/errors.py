"""
Error taxonomy shared by services and route handlers.

Services raise these; server.py turns them into
``{"error": <message>, "code": <code>}`` JSON responses.
"""


class GatewayError(Exception):
    status = 500
    code = 'INTERNAL_ERROR'

    def __init__(self, message, code=None, status=None, **extra):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        if status:
            self.status = status
        self.extra = extra

    def to_dict(self) -> dict:
        body = {"error": self.message, "code": self.code}
        body.update(self.extra)
        return body


class InvalidInput(GatewayError):
    status = 400
    code = 'INVALID_INPUT'


class Forbidden(GatewayError):
    status = 403
    code = 'NOT_AUTHORIZED'


class NotFound(GatewayError):
    status = 404
    code = 'NOT_FOUND'


class Conflict(GatewayError):
    status = 409
    code = 'CONFLICT'


class UpstreamFailure(GatewayError):
    """Chain call, broadcast or metadata fetch failed."""
    status = 500
    code = 'TX_FAILED'
