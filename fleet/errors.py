from __future__ import annotations


class FleetError(Exception):
    pass


class RuntimeCommandError(FleetError):
    """A container-runtime invocation exited non-zero.

    Only raised by adapter calls that have no fallback state (inspect, logs, ps).
    """

    def __init__(self, command: list[str], returncode: int, stderr: str):
        self.command = list(command)
        self.returncode = returncode
        self.stderr = stderr
        super().__init__(f"'{' '.join(self.command)}' exited with {returncode}: {stderr.strip()}")


class PortExhaustedError(FleetError):
    pass


class UnknownInstanceError(FleetError):
    pass


class LicenseError(FleetError):
    pass


class DecryptError(FleetError):
    pass


class EncryptError(FleetError):
    pass


class NotConnectedError(FleetError):
    """The instance has no established channel; retry later."""


class RelayError(FleetError):
    """A relayed request failed after the channel was established."""
