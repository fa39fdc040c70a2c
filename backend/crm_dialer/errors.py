# /crm_dialer/errors.py

# Exceptions shared by the workflow engine and the dispatch layer.
# Absent event fields and unmatched branches are NOT errors; they are
# reported as incomplete executions instead.


class CrmDialerError(Exception):
    """Base class for all errors raised by this service."""


class GraphError(CrmDialerError):
    """A flow definition is malformed (missing start, dangling edge, cycle...)."""

    def __init__(self, message: str, flow_id: str | None = None):
        super().__init__(message)
        self.flow_id = flow_id


class UnsupportedActionError(CrmDialerError):
    def __init__(self, action_type: str | None):
        super().__init__(f"Unsupported action type: {action_type!r}")
        self.action_type = action_type


class DispatchError(CrmDialerError):
    """Publishing an outbound message or calling a downstream platform failed."""

    def __init__(self, message: str, action_type: str | None = None):
        super().__init__(message)
        self.action_type = action_type


class CapacityExceeded(DispatchError):
    """The dispatch queue could not accept a submission in time."""
