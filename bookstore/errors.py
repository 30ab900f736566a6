"""Error kinds raised by the services.

Each kind maps to one HTTP status in :func:`register_error_handlers`; the
services themselves know nothing about HTTP.
"""
from flask import jsonify

from .utils.api import api_error, to_json


class ServiceError(Exception):
    status_code = 400

    def __init__(self, message, **details):
        super().__init__(message)
        self.message = message
        self.details = details

    @property
    def kind(self) -> str:
        return type(self).__name__


class InvalidInput(ServiceError):
    status_code = 400


class NotFound(ServiceError):
    status_code = 404


class Conflict(ServiceError):
    status_code = 409


class InsufficientStock(ServiceError):
    status_code = 409


class InsufficientFunds(ServiceError):
    status_code = 422


class Internal(ServiceError):
    status_code = 500


def register_error_handlers(app):
    @app.errorhandler(ServiceError)
    def handle_service_error(e: ServiceError):
        r = jsonify(api_error(e.message, to_json({"kind": e.kind, **e.details})))
        r.status_code = e.status_code
        return r
