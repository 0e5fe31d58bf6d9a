"""Exceptions raised by the process orchestrator."""


class VibeProcessError(Exception):
    """Base class for all orchestrator errors."""


class UnknownResourceType(VibeProcessError):
    """Resource type is not registered."""

    def __init__(self, rtype: str) -> None:
        super().__init__(f"unknown resource type: {rtype}")
        self.rtype = rtype


class ResourceUnavailable(VibeProcessError):
    """Availability probe reported the value as in use."""

    def __init__(self, rtype: str, value: str) -> None:
        super().__init__(f"{rtype} {value} not available")
        self.rtype = rtype
        self.value = value


class RangeExhausted(VibeProcessError):
    """No candidate in a counter range passed its probe."""

    def __init__(self, rtype: str, start: int, end: int) -> None:
        super().__init__(f"no available {rtype} in range {start}-{end}")
        self.rtype = rtype
        self.start = start
        self.end = end


class MissingExplicitValue(VibeProcessError, ValueError):
    """Non-counter resource requested without a value."""

    def __init__(self, rtype: str) -> None:
        super().__init__(f"resource type {rtype} requires explicit value")
        self.rtype = rtype


class ResourceTypeGone(VibeProcessError):
    """Resource type was removed after the resource was claimed."""

    def __init__(self, rtype: str) -> None:
        super().__init__(f"resource type {rtype} no longer exists")
        self.rtype = rtype


class InstanceAlreadyExists(VibeProcessError):
    """Instance name is already taken."""

    def __init__(self, name: str) -> None:
        super().__init__(f"instance {name} already exists")
        self.name = name


class InstanceNotFound(VibeProcessError, LookupError):
    """No instance with the given name."""

    def __init__(self, name: str) -> None:
        super().__init__(f"instance {name} not found")
        self.name = name


class TemplateNotFound(VibeProcessError, LookupError):
    """No template with the given id."""

    def __init__(self, template_id: str) -> None:
        super().__init__(f"template {template_id} not found")
        self.template_id = template_id


class ProcessNotRunning(VibeProcessError):
    """Operation requires a live process."""


class InvalidStateTransition(VibeProcessError):
    """Lifecycle call is not valid from the instance's current status."""


class SpawnFailure(VibeProcessError):
    """The OS refused to start the command."""


class EmptyCommand(VibeProcessError, ValueError):
    """Interpolated command or action has no words."""

    def __init__(self, message: str = "empty command") -> None:
        super().__init__(message)


class ProcessNotFound(VibeProcessError, LookupError):
    """Process-table entry for a pid is missing or unreadable."""

    def __init__(self, pid: int, reason: str = "") -> None:
        message = f"process {pid} does not exist"
        if reason:
            message = f"cannot read process {pid}: {reason}"
        super().__init__(message)
        self.pid = pid


class ProcfsUnreadable(VibeProcessError):
    """The process-table root itself could not be read."""


class SignalDenied(VibeProcessError, PermissionError):
    """The OS refused to deliver a signal to the process."""
