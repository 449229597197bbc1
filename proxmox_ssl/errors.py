"""Error types raised by the provisioning stages.

Every fatal condition is a ``ProvisioningError`` carrying a short ``kind``
label and, where a server answered, the last response body so the caller can
print it next to the error line.
"""


class ProvisioningError(Exception):
    kind = "error"
    exit_code = 1

    def __init__(self, message, response_body=None):
        super().__init__(message)
        self.message = message
        self.response_body = response_body

    def __str__(self):
        if self.response_body:
            return f"{self.message}. Response: {self.response_body}"
        return self.message


class ToolMisuse(ProvisioningError):
    """Bad or missing command-line arguments."""

    kind = "tool-misuse"
    exit_code = 2


class Unreachable(ProvisioningError):
    kind = "unreachable"


class Unauthorized(ProvisioningError):
    kind = "unauthorized"


class UnexpectedResponse(ProvisioningError):
    kind = "unexpected"


class ValidationFailed(ProvisioningError):
    """A stage call was rejected by the management API."""

    kind = "validation-failed"


class IssuanceFailed(ProvisioningError):
    kind = "issuance-failed"


class VerificationTimeout(ProvisioningError):
    kind = "verification-timeout"
