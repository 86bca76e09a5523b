"""Domain errors for ephemeraldb."""


class EphemeralDbError(RuntimeError):
    """Raised when a test database cannot be provided or released safely."""


class ContainerStartError(EphemeralDbError):
    """The container runtime failed to launch the shared container."""


class StartupTimeoutError(EphemeralDbError):
    """The container never reported ready within the startup bound."""


class ProvisioningError(EphemeralDbError):
    """Creating or configuring the test database failed."""


class TeardownError(EphemeralDbError):
    """Dropping the test database failed, leaving it behind in the container."""
