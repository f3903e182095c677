from __future__ import annotations

from typing import Any, Optional

from fastapi import HTTPException


class ReviewerAssignmentError(Exception):
    """
    审稿人分配领域错误的基类。

    中文注释:
    - service 层只抛领域错误，不直接依赖 HTTP；路由层统一通过 to_http_exception 转换。
    - code 是稳定的机器可读标识，前端据此渲染只读状态。
    """

    status_code = 500
    code = "reviewer_assignment_error"

    def __init__(self, message: str, *, details: Optional[dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ValidationError(ReviewerAssignmentError):
    status_code = 422
    code = "validation_error"


class NotFoundError(ReviewerAssignmentError):
    status_code = 404
    code = "not_found"


class DuplicateInvitationError(ReviewerAssignmentError):
    status_code = 409
    code = "duplicate_invitation"

    def __init__(self, message: str = "An active invitation already exists for this reviewer", **kwargs: Any):
        super().__init__(message, **kwargs)


class InvitationAlreadyResolvedError(ReviewerAssignmentError):
    status_code = 409
    code = "invitation_already_resolved"

    def __init__(self, status: str, **kwargs: Any):
        super().__init__(f"Invitation already {status}", **kwargs)
        self.status = status
        self.code = f"invitation_already_{status}"


class InvitationExpiredError(ReviewerAssignmentError):
    status_code = 410
    code = "invitation_expired"

    def __init__(self, message: str = "Invitation has expired", **kwargs: Any):
        super().__init__(message, **kwargs)


class PermissionDeniedError(ReviewerAssignmentError):
    status_code = 403
    code = "permission_denied"


class FieldUndeterminedError(ReviewerAssignmentError):
    status_code = 400
    code = "field_undetermined"

    def __init__(self, message: str = "Could not determine manuscript field", **kwargs: Any):
        super().__init__(message, **kwargs)


class ManuscriptNotInvitableError(ReviewerAssignmentError):
    status_code = 409
    code = "manuscript_not_invitable"


class InternalProcessingError(ReviewerAssignmentError):
    status_code = 500
    code = "internal_processing_error"


class StoreTimeoutError(InternalProcessingError):
    status_code = 504
    code = "store_timeout"


def terminal_status_error(status: str) -> ReviewerAssignmentError:
    """终态邀请的错误：expired 单独映射 410，其余统一 409 且消息区分状态。"""
    if status == "expired":
        return InvitationExpiredError()
    return InvitationAlreadyResolvedError(status)


def to_http_exception(exc: ReviewerAssignmentError) -> HTTPException:
    detail: dict[str, Any] = {"code": exc.code, "message": exc.message}
    if exc.details:
        detail["details"] = exc.details
    return HTTPException(status_code=exc.status_code, detail=detail)
