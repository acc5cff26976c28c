"""Error taxonomy for the admin data engine."""

from __future__ import annotations

from typing import Any, Dict, List


class AdminError(Exception):
    code = "ADMIN_ERROR"
    status = 400

    def __init__(self, message: str, path: str | None = None, detail: dict | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.path = path
        self.detail = detail

    def issues(self) -> list[dict]:
        return [{"code": self.code, "message": self.message, "path": self.path, "detail": self.detail}]

    def payload(self) -> dict:
        return {}


class PermissionDenied(AdminError):
    code = "FORBIDDEN"
    status = 403


class AuthRequired(PermissionDenied):
    code = "AUTH_REQUIRED"
    status = 401


class AuthorizationUnavailable(AdminError):
    code = "AUTHORIZATION_UNAVAILABLE"
    status = 503


class ModelNotFound(AdminError):
    code = "MODEL_NOT_FOUND"
    status = 404

    def __init__(self, model: str) -> None:
        super().__init__(f"Model not found: {model}", path="model", detail={"model": model})
        self.model = model


class _FieldErrors(AdminError):
    def __init__(self, field_errors: Dict[str, str], message: str) -> None:
        super().__init__(message, detail={"fields": dict(field_errors)})
        self.field_errors = dict(field_errors)

    def issues(self) -> list[dict]:
        return [
            {"code": self.code, "message": msg, "path": field, "detail": None}
            for field, msg in self.field_errors.items()
        ]

    def payload(self) -> dict:
        return {"field_errors": dict(self.field_errors)}


class ValidationError(_FieldErrors):
    code = "VALIDATION_FAILED"

    def __init__(self, field_errors: Dict[str, str]) -> None:
        super().__init__(field_errors, "Record validation failed")


class ReferenceIntegrityError(_FieldErrors):
    code = "REFERENCE_INVALID"

    def __init__(self, field_errors: Dict[str, str]) -> None:
        super().__init__(field_errors, "Record references missing targets")


class RecordNotFound(AdminError):
    code = "RECORD_NOT_FOUND"
    status = 404

    def __init__(self, model: str, record_id: str | None = None, missing_ids: List[str] | None = None) -> None:
        if missing_ids:
            message = f"{len(missing_ids)} {model} record(s) not found"
            detail: dict[str, Any] = {"model": model, "missing_ids": list(missing_ids)}
        else:
            message = f"{model} record not found"
            detail = {"model": model, "record_id": record_id}
        super().__init__(message, path="id" if not missing_ids else "ids", detail=detail)
        self.model = model
        self.record_id = record_id
        self.missing_ids = list(missing_ids or [])

    def payload(self) -> dict:
        if self.missing_ids:
            return {"missing_ids": list(self.missing_ids)}
        return {}


class StoreUnavailable(AdminError):
    code = "STORE_UNAVAILABLE"
    status = 503


class OperationNotSupported(AdminError):
    code = "OPERATION_NOT_SUPPORTED"
    status = 405


class ServerError(AdminError):
    code = "INTERNAL_ERROR"
    status = 500
