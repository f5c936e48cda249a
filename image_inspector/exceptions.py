"""
Error taxonomy for image-inspector.

Acquisition errors abort the whole run. Scan errors are recorded on the
scanner's status and never stop sibling scanners.
"""


class InspectorError(Exception):
    """Base class for all image-inspector errors."""


class OptionsError(InspectorError, ValueError):
    """Invalid combination of inspector options."""


class ConfigParseFailed(InspectorError):
    """A credential or custom scan configuration file could not be used."""


class CredentialError(InspectorError):
    """Credentials could not be resolved (e.g. unreadable password file)."""


# Acquisition phase

class DaemonUnreachable(InspectorError):
    """Unable to connect to the container daemon."""


class PullFailed(InspectorError):
    """Every credential candidate failed to pull the image."""


class ContainerCreateFailed(InspectorError):
    """The ephemeral container could not be created."""


class InspectFailed(InspectorError):
    """Container or image descriptors could not be read back."""


class DestinationAllocationFailed(InspectorError):
    """The destination directory could not be created."""


class ExtractionFailed(InspectorError):
    """The exported filesystem stream could not be reconstructed."""


# Scan phase

class ScannerNotFound(InspectorError, LookupError):
    """No scanner is registered under the requested name."""


class ScannerInvocationFailed(InspectorError):
    """The scan backend failed to run."""


class ScannerResultUnreadable(InspectorError):
    """The scan ran but its result artifacts could not be read back."""
