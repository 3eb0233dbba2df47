from easypy.exceptions import TException

from .messages import get_message


class Abort(Exception):
    @property
    def code(self):
        return self.args[0]

    @property
    def message(self):
        return self.args[1]


class UserError(Abort):
    """
    Failure reported to the orchestrator, described by an entry of the message catalog.
    Carries the request id and either the driver-side error text or the wrapped backend error.
    """

    def __init__(self, msg_code, request_id="", error=None, args=()):
        msg = get_message(msg_code, *args)
        self.msg_code = msg_code
        self.status = msg.status
        self.description = msg.description
        self.action = msg.action
        self.request_id = request_id
        self.backend_error = str(error) if isinstance(error, (BackendError, ProviderError)) else ""
        self.csi_error = str(error) if error is not None and not self.backend_error else ""
        super().__init__(self.status, self.info())

    def info(self):
        if self.backend_error:
            return f"{{RequestID: {self.request_id}, BackendError: {self.backend_error}, Action: {self.action}}}"
        if self.csi_error:
            return (
                f"{{RequestID: {self.request_id}, Code: {self.msg_code}, Description: {self.description},"
                f" Error: {self.csi_error}, Action: {self.action}}}"
            )
        return (
            f"{{RequestID: {self.request_id}, Code: {self.msg_code},"
            f" Description: {self.description}, Action: {self.action}}}"
        )

    def __str__(self):
        return self.info()


class BackendError(Exception):
    """
    Error returned by the cloud API (or by the transport towards it).

    kind is one of 'vpc', 'iks', 'iam', 'transport' or 'timeout'; code is the backend's own code
    (the first code of a VPC error envelope, the code field of an IKS one).
    """

    def __init__(self, kind, code="", http_status=None, message="", trace="", more_info="", wrapped=None):
        self.kind = kind
        self.code = code
        self.http_status = http_status
        self.message = message
        self.trace = trace
        self.more_info = more_info
        self.wrapped = wrapped
        super().__init__(self.render())

    @classmethod
    def from_response(cls, response, iks=False):
        try:
            body = response.json() or {}
        except ValueError:
            body = {}
        if iks or "incidentID" in body:
            return cls(
                "iks", code=body.get("code", ""), http_status=response.status_code,
                message=body.get("description") or response.text, trace=body.get("incidentID", ""),
                more_info=body.get("recoveryCLI", ""),
            )
        errors = body.get("errors") or [{}]
        first = errors[0]
        return cls(
            "vpc", code=first.get("code", ""), http_status=response.status_code,
            message=first.get("message") or response.text, trace=body.get("trace", ""),
            more_info=first.get("more_info", ""),
        )

    @property
    def is_timeout(self):
        return self.kind == "timeout"

    def render(self):
        if self.kind in ("transport", "timeout"):
            return f"{self.message}"
        text = f"Trace Code:{self.trace}, {self.message}"
        if self.more_info:
            text += f" Please check {self.more_info}"
        return text


class ProviderError(Exception):
    """A failure of a provider-session operation, optionally wrapping the backend error that caused it."""

    def __init__(self, kind, description="", backend_error=None):
        self.kind = kind
        self.description = description
        self.backend_error = backend_error
        super().__init__(str(self))

    def __str__(self):
        text = f"{self.kind}: {self.description}" if self.description else self.kind
        if self.backend_error is not None:
            text += f" ({self.backend_error})"
        return text


class CredentialsError(TException):
    template = "Cannot load cloud credentials: {reason}"


class MountFailed(TException):
    template = "Mounting {src} at {tgt} failed"


class UnmountFailed(TException):
    template = "Unmounting {path} failed"


class FormatFailed(TException):
    template = "Formatting {device} as {fs_type} failed"


class ResizeFailed(TException):
    template = "Resizing filesystem on {device} failed"


class InvalidParameter(ValueError):
    """A create-volume parameter, capability or capacity that the driver cannot accept"""


class CapacityOutOfRange(InvalidParameter):
    def __init__(self, capacity, profile):
        self.capacity = capacity
        self.profile = profile
        super().__init__(f"capacity {capacity}GiB is outside the supported range for profile {profile!r}")


class NodeMetadataMissing(TException):
    template = "Node {node} has no {missing}"
