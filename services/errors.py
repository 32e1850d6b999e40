# services/errors.py
"""
审核流程错误分类：

- ValidationError / PermissionDeniedError / NotFoundError / TerminalStateError：
  确定性错误，原样返回调用方，不自动重试
- ConflictError：version 过期，附带当前档案快照，调用方据此重新决定
- TransientStoreError：存储暂不可用，可由 with_transient_retry 有限重试
- IssuerExhaustionError：当年序号用尽，致命错误，需要运维介入
"""


class WorkflowError(Exception):
    code = "WORKFLOW_ERROR"
    http_status = 400

    def __init__(self, message="", *, current=None):
        super().__init__(message or self.code)
        self.message = message or self.code
        self.current = current

    def to_dict(self):
        return {"error": self.code, "message": self.message, "data": self.current}


class ValidationError(WorkflowError):
    code = "VALIDATION_ERROR"
    http_status = 422


class PermissionDeniedError(WorkflowError):
    code = "PERMISSION_DENIED"
    http_status = 403


class NotFoundError(WorkflowError):
    code = "NOT_FOUND"
    http_status = 404


class ConflictError(WorkflowError):
    code = "CONFLICT"
    http_status = 409


class TerminalStateError(WorkflowError):
    code = "TERMINAL_STATE"
    http_status = 409


class IssuerExhaustionError(WorkflowError):
    code = "ISSUER_EXHAUSTED"
    http_status = 500


class TransientStoreError(WorkflowError):
    code = "STORE_UNAVAILABLE"
    http_status = 503


class DispatchError(WorkflowError):
    code = "DISPATCH_ERROR"
    http_status = 500
