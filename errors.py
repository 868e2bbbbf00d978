"""Error kinds returned by the API as {'success': False, 'error': ...}"""


class ApiError(Exception):
    status_code = 400

    def __init__(self, message, status_code=None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code


class ValidationError(ApiError):
    """Missing or invalid input"""
    status_code = 400


class UnauthorizedError(ApiError):
    status_code = 401


class NotFoundError(ApiError):
    status_code = 404


class MethodNotAllowed(ApiError):
    status_code = 405


class UnavailableError(ApiError):
    """Business rule conflict, e.g. a material with no stock left"""
    status_code = 400


class ServerError(ApiError):
    """Unexpected store failure"""
    status_code = 500
