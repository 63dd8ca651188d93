"""
Exception hierarchy for the orchestration engine.

ValidationError and NotFoundError are rejected back to the caller with no state
change. DeliveryFailure and SweepError are recorded and isolated to the single
command or device they concern.
"""


class FleetError(Exception):
    """Base exception for all orchestration errors"""

    def __init__(self, message: str, recoverable: bool = True):
        self.message = message
        self.recoverable = recoverable
        super().__init__(message)


class ValidationError(FleetError):
    """Rejected input: unknown actuator, invalid mode or value"""


class UnknownActuator(ValidationError):
    def __init__(self, device_id: str, actuator: str):
        self.device_id = device_id
        self.actuator = actuator
        super().__init__(f"Actuator {actuator} not found on device {device_id}")


class InvalidMode(ValidationError):
    def __init__(self, mode: object):
        self.mode = mode
        super().__init__(f"Mode must be AUTO or MANUAL, got {mode!r}")


class ModeNotSupported(ValidationError):
    def __init__(self, actuator: str, mode: str):
        self.actuator = actuator
        self.mode = mode
        super().__init__(f"{actuator} does not support {mode} mode")


class NotFoundError(FleetError):
    """Unknown device or command id"""


class DeviceNotFound(NotFoundError):
    def __init__(self, device_id: str):
        self.device_id = device_id
        super().__init__(f"Device {device_id} not found")


class CommandNotFound(NotFoundError):
    def __init__(self, device_id: str, command_id: str):
        self.device_id = device_id
        self.command_id = command_id
        super().__init__(f"Command {command_id} not found for device {device_id}")


class CommandNotDelivered(CommandNotFound):
    """The command exists but is not awaiting acknowledgment (pending or terminal)."""

    def __init__(self, device_id: str, command_id: str, status: str):
        self.status = status
        super().__init__(device_id, command_id)
        self.message = f"Command {command_id} is {status}, not awaiting acknowledgment"
        self.args = (self.message,)


class DeliveryFailure(FleetError):
    """Device-reported failure that exhausted the retry budget"""

    def __init__(self, device_id: str, command_id: str, retries: int, error: str | None = None):
        self.device_id = device_id
        self.command_id = command_id
        self.retries = retries
        self.error = error
        super().__init__(
            f"Command {command_id} on {device_id} failed after {retries} retries: {error or 'no error reported'}",
            recoverable=False,
        )


class SweepError(FleetError):
    """A single device's liveness evaluation failed; the sweep continues"""

    def __init__(self, device_id: str, cause: BaseException):
        self.device_id = device_id
        self.cause = cause
        super().__init__(f"Liveness evaluation failed for {device_id}: {cause}")
