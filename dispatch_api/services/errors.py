class DispatchError(Exception):
    code = "dispatch_error"

    def __init__(self, message: str, code: str | None = None):
        self.message = message
        if code:
            self.code = code
        super().__init__(message)


class DispatchValidationError(DispatchError):
    code = "validation"


class GuardrailViolationError(DispatchError):
    code = "guardrail_violation"


class RunNotFoundError(DispatchError):
    code = "not_found"
