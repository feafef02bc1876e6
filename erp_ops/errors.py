from __future__ import annotations

from typing import Any, Dict

from erp_ops.ui_strings import error_message


class AppError(Exception):
    default_code = "system_error"
    default_message_key = "unexpected_error"
    default_http_status = 500
    default_critical = True

    def __init__(
        self,
        code: str | None = None,
        message_key: str | None = None,
        http_status: int | None = None,
        critical: bool | None = None,
        details: str | None = None,
        payload: Dict[str, Any] | None = None,
    ) -> None:
        self.code = (code or self.default_code).strip()
        self.message_key = (message_key or self.default_message_key).strip()
        self.http_status = int(http_status or self.default_http_status)
        self.critical = bool(self.default_critical if critical is None else critical)
        self.details = (details or "").strip() or None
        self.payload = dict(payload or {})
        super().__init__(self.details or self.code)

    @property
    def kind(self) -> str:
        return type(self).__name__

    def user_message(self) -> str:
        fallback = error_message("unexpected_error", "Nao foi possivel concluir a operacao.")
        return error_message(self.message_key, fallback)

    def to_response_payload(self, request_id: str) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "error": self.code,
            "kind": self.kind,
            "message": self.user_message(),
            "request_id": request_id,
        }
        if self.payload:
            payload.update(self.payload)
        return payload


class InvalidRequest(AppError):
    default_code = "invalid_request"
    default_message_key = "invalid_request"
    default_http_status = 400
    default_critical = False


class InvalidQuotation(InvalidRequest):
    default_code = "invalid_quotation"
    default_message_key = "invalid_quotation"


class InvalidQuantity(InvalidRequest):
    default_code = "invalid_quantity"
    default_message_key = "quantity_invalid"


class InvalidTransition(AppError):
    default_code = "invalid_transition"
    default_message_key = "action_not_allowed_for_status"
    default_http_status = 409
    default_critical = False


class Forbidden(AppError):
    default_code = "permission_denied"
    default_message_key = "permission_denied"
    default_http_status = 403
    default_critical = False


class InsufficientStock(AppError):
    default_code = "insufficient_stock"
    default_message_key = "insufficient_stock"
    default_http_status = 409
    default_critical = False


class Conflict(AppError):
    default_code = "conflict"
    default_message_key = "conflict"
    default_http_status = 409
    default_critical = False


class NotFound(AppError):
    default_code = "not_found"
    default_message_key = "not_found"
    default_http_status = 404
    default_critical = False


class SystemError(AppError):
    default_code = "system_error"
    default_message_key = "unexpected_error"
    default_http_status = 500
    default_critical = True
