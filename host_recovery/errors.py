"""
Error taxonomy for the recovery run.

Each error's message doubles as the human-readable reason recorded for the
stage transition it causes.
"""

from typing import Optional


class RecoveryError(Exception):
    """Base class for all recovery errors"""

    def __init__(self, message: str, host: Optional[str] = None):
        super().__init__(message)
        self.host = host


class ConfigError(RecoveryError):
    """Configuration is missing or unusable"""


class DependencyMissing(RecoveryError):
    """A required external program is not installed"""

    def __init__(self, programs):
        self.programs = list(programs)
        super().__init__(f"Required program(s) not found on PATH: {', '.join(self.programs)}")


class ProbeUnreachable(RecoveryError):
    """Target did not answer the liveness and login checks"""


class ManagementUnreachable(RecoveryError):
    """Management controller did not answer a liveness check"""


class ManagementCycleFailed(RecoveryError):
    """Management controller power cycle command failed"""


class RecoveryTimeout(RecoveryError):
    """Target never answered within the recovery wait window"""


class OutletError(RecoveryError):
    """Base for outlet-level failures"""


class OutletNotFound(OutletError):
    """No outlet on the PDU carries the requested label"""

    def __init__(self, label: str, host: Optional[str] = None):
        self.label = label
        super().__init__(f"No outlet labelled '{label}' on PDU {host}", host=host)


class OutletCycleFailed(OutletError):
    """An outlet OFF/ON sequence could not be completed"""


class SnmpError(RecoveryError):
    """SNMP request failed or returned an error status"""
