"""Error taxonomy shared by the supervisor, transport and adapter."""

from enum import Enum


class BridgeError(Exception):
    """Base class for every failure the bridge reports."""


class ConfigurationError(BridgeError):
    """Settings are missing or unusable."""


class SpawnError(BridgeError):
    """The daemon failed to launch or exited with a recognized failure code."""

    def __init__(self, message: str, exit_code: int | None = None) -> None:
        super().__init__(message)
        self.exit_code = exit_code


class TransportError(BridgeError):
    """Network failure, timeout, or a non-2xx response."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class IntegrityError(BridgeError):
    """Response HMAC did not match; the body was discarded unparsed."""


class ConfirmationKind(str, Enum):
    UNKNOWN_EXTRA_CONF = "UnknownExtraConf"
    NO_EXTRA_CONF = "NoExtraConfDetected"


class ConfirmationRequiredError(BridgeError):
    """The daemon wants a user decision about a project extra-config file."""

    def __init__(
        self,
        kind: ConfirmationKind,
        extra_conf_file: str | None = None,
        message: str = "",
    ) -> None:
        super().__init__(message or f"{kind.value}: {extra_conf_file or '-'}")
        self.kind = kind
        self.extra_conf_file = extra_conf_file
