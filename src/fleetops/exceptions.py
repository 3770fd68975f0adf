"""Exception types for fleetops."""


class FleetOpsError(Exception):
    """Base class for all fleetops errors."""


class ConfigurationError(FleetOpsError):
    """Raised when inventory or configuration data cannot be used.

    Configuration errors are reported at resolution time, before any
    command is attempted.
    """


class FormatError(ConfigurationError):
    """Raised when an inventory file contains a malformed line.

    Attributes:
        msg: Human-readable error message
        line_number: 1-based line number of the offending line (if known)

    Example:
        raise FormatError("Unterminated section header '[web'", line_number=3)
        # str(e) == "Line 3: Unterminated section header '[web'"
    """

    def __init__(self, msg: str, line_number: int | None = None) -> None:
        self.msg = msg
        self.line_number = line_number
        super().__init__(str(self))

    def __str__(self) -> str:
        if self.line_number is None:
            return self.msg
        return f"Line {self.line_number}: {self.msg}"


class CredentialMissingError(FleetOpsError):
    """Raised when privilege escalation is requested without a credential.

    Distinct from I/O failures so that callers can render a specific
    diagnostic instead of a generic execution error.

    Attributes:
        variable: Name of the environment variable that was expected
    """

    def __init__(self, variable: str) -> None:
        self.variable = variable
        super().__init__(f"{variable} environment variable is not set")


class LogServiceError(FleetOpsError):
    """Raised by activity log operations that must not fail silently."""
