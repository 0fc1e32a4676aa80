"""Exceptions raised while bootstrapping the controller manager."""


class ManagerError(Exception):
    """Base class for all manager setup and runtime errors."""


class ConfigError(ManagerError):
    """Raised when flag values cannot form a valid runtime configuration."""


class TLSPolicyError(ManagerError):
    """Base class for webhook TLS policy errors."""


class InvalidTLSVersion(TLSPolicyError):
    """Raised for a TLS version label that is not supported."""


class TLSRangeInverted(TLSPolicyError):
    """Raised when the minimum TLS version is greater than the maximum."""


class UnknownCipherSuite(TLSPolicyError):
    """Raised when a cipher suite name is not in the known registry."""


class APIGroupUnavailable(ManagerError):
    """Raised when the cluster does not serve a required API group/version."""


class SchemeConflict(ManagerError):
    """Raised when a kind is registered twice with different definitions."""


class RegistrationError(ManagerError):
    """Raised when the runtime rejects a controller or webhook registration."""

    def __init__(self, component: str, name: str, message: str):
        self.component = component
        self.name = name
        super().__init__(f"unable to create {component} {name}: {message}")
