from __future__ import annotations

DEPLOYMENT_NOT_FOUND = "DEPLOYMENT_NOT_FOUND"
DEPLOYMENT_DUPLICATE = "DEPLOYMENT_DUPLICATE"
DEPLOYMENT_TRANSITION_INVALID = "DEPLOYMENT_TRANSITION_INVALID"
REQ_VALIDATION_FAILED = "REQ_VALIDATION_FAILED"
WEBHOOK_SUBSCRIPTION_NOT_FOUND = "WEBHOOK_SUBSCRIPTION_NOT_FOUND"
WEBHOOK_PERMISSION_DENIED = "WEBHOOK_PERMISSION_DENIED"
IDEMPOTENCY_CONFLICT = "IDEMPOTENCY_CONFLICT"
AUDIT_EXPORT_TIMEOUT = "AUDIT_EXPORT_TIMEOUT"
WEBHOOK_DELIVERY_FAILED = "WEBHOOK_DELIVERY_FAILED"

HTTP_STATUS_BY_CODE: dict[str, int] = {
    DEPLOYMENT_NOT_FOUND: 404,
    DEPLOYMENT_DUPLICATE: 409,
    DEPLOYMENT_TRANSITION_INVALID: 409,
    REQ_VALIDATION_FAILED: 400,
    WEBHOOK_SUBSCRIPTION_NOT_FOUND: 404,
    WEBHOOK_PERMISSION_DENIED: 403,
    IDEMPOTENCY_CONFLICT: 409,
    AUDIT_EXPORT_TIMEOUT: 504,
}

ERROR_CLASS_BY_CODE: dict[str, str] = {
    DEPLOYMENT_NOT_FOUND: "validation",
    DEPLOYMENT_DUPLICATE: "business_rule",
    DEPLOYMENT_TRANSITION_INVALID: "business_rule",
    REQ_VALIDATION_FAILED: "validation",
    WEBHOOK_SUBSCRIPTION_NOT_FOUND: "validation",
    WEBHOOK_PERMISSION_DENIED: "security_sensitive",
    IDEMPOTENCY_CONFLICT: "validation",
    AUDIT_EXPORT_TIMEOUT: "availability",
}


class ApiError(Exception):
    def __init__(
        self,
        *,
        code: str,
        message: str,
        error_class: str,
        retryable: bool,
        http_status: int,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.error_class = error_class
        self.retryable = retryable
        self.http_status = http_status

    @classmethod
    def from_code(cls, code: str, message: str, *, retryable: bool = False) -> "ApiError":
        return cls(
            code=code,
            message=message,
            error_class=ERROR_CLASS_BY_CODE.get(code, "validation"),
            retryable=retryable,
            http_status=HTTP_STATUS_BY_CODE.get(code, 400),
        )
