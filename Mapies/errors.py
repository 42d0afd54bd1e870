"""
Error types raised by the Mapies services.

Each error carries the HTTP status and short code the Flask layer answers
with, so services can raise them without knowing about requests.
"""


class MapiesError(Exception):
    status = 500
    code = 'internal'

    def __init__(self, message='', status=None, details=None):
        super().__init__(message)
        if status is not None:
            self.status = status
        self.details = details or {}

    def to_dict(self):
        body = {'error': self.code, 'message': str(self)}
        if self.details:
            body['details'] = self.details
        return body


class InvalidArgument(MapiesError):
    status = 400
    code = 'invalid-argument'


class Unauthenticated(MapiesError):
    status = 401
    code = 'unauthenticated'


class PermissionDenied(MapiesError):
    status = 403
    code = 'permission-denied'


class NotFound(MapiesError):
    status = 404
    code = 'not-found'


class FailedPrecondition(MapiesError):
    status = 409
    code = 'failed-precondition'


class ConfigError(MapiesError):
    code = 'config'
