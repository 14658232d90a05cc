class VoteError(Exception):
    kind = "error"
    status_code = 400
    retryable = False

    def __init__(self, detail: str, state: str | None = None):
        super().__init__(detail)
        self.detail = detail
        self.state = state

    def to_dict(self) -> dict:
        body = {"error": self.kind, "detail": self.detail}
        if self.state is not None:
            body["state"] = self.state
        return body


class ValidationError(VoteError):
    kind = "validation_error"
    status_code = 422


class AuthError(VoteError):
    kind = "auth_error"
    status_code = 401


class StateError(VoteError):
    kind = "state_error"
    status_code = 409


class NotFoundError(StateError):
    kind = "not_found"
    status_code = 404


class ConflictError(VoteError):
    kind = "conflict"
    status_code = 409


class EngineError(VoteError):
    """Encryption engine failure or timeout. Nothing was persisted; retry later."""

    kind = "engine_error"
    status_code = 503
    retryable = True


ERRORS_BY_KIND = {
    cls.kind: cls
    for cls in (ValidationError, AuthError, StateError, NotFoundError, ConflictError, EngineError)
}


def error_from_dict(body: dict) -> VoteError:
    cls = ERRORS_BY_KIND.get(body.get("error"), VoteError)
    return cls(body.get("detail", ""), state=body.get("state"))
