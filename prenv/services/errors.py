class PrenvException(Exception):
    pass


class ConfigurationError(PrenvException):
    """The configuration tree is invalid; detected before anything runs."""


class VerificationError(PrenvException):
    """Rendered output or its inputs did not match what was expected."""


class UnknownActionError(PrenvException):
    def __init__(self, action: str) -> None:
        self.action = action
        super().__init__(f"unknown action {action!r}, expected one of prenv-apply, prenv-destroy")


class CancelledError(PrenvException):
    pass


class GitHubAPIError(PrenvException):
    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        response_body: str | None = None,
        request_url: str | None = None,
    ) -> None:
        self.status_code = status_code
        self.response_body = response_body
        self.request_url = request_url
        super().__init__(message)

    def __str__(self) -> str:
        text = super().__str__()
        if self.status_code is not None:
            text = f"{text} (status={self.status_code}, url={self.request_url})"
        return text
