"""Daemon-native response shapes and the error-body decoder.

Locations are 1-based with absolute file paths, exactly as ycmd sends them.
Translation to editor coordinates lives in client.mapping.
"""

from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from core.errors import ConfirmationKind, ConfirmationRequiredError


class _DaemonModel(BaseModel):
    model_config = ConfigDict(extra="ignore")


# ---------------------------------------------------------------------------
# Locations
# ---------------------------------------------------------------------------


class YcmLocation(_DaemonModel):
    filepath: str = ""
    line_num: int = 0
    column_num: int = 0

    @property
    def is_valid(self) -> bool:
        return self.line_num > 0 and self.column_num > 0


class YcmRange(_DaemonModel):
    start: YcmLocation
    end: YcmLocation

    @property
    def is_valid(self) -> bool:
        return self.start.is_valid and self.end.is_valid


# ---------------------------------------------------------------------------
# Payloads
# ---------------------------------------------------------------------------


class YcmCompletion(_DaemonModel):
    insertion_text: str = ""
    menu_text: str = ""
    extra_menu_info: str = ""
    detailed_info: str = ""
    kind: str = ""


class YcmCompletions(_DaemonModel):
    completions: list[YcmCompletion] = []
    completion_start_column: int | None = None


class YcmDiagnostic(_DaemonModel):
    kind: str = "ERROR"
    text: str = ""
    ranges: list[YcmRange] = []
    location: YcmLocation = Field(default_factory=YcmLocation)
    location_extent: YcmRange | None = None
    fixit_available: bool = False


class YcmChunk(_DaemonModel):
    range: YcmRange
    replacement_text: str = ""


class YcmFixIt(_DaemonModel):
    chunks: list[YcmChunk] = []
    text: str = ""
    location: YcmLocation | None = None


class YcmFixIts(_DaemonModel):
    fixits: list[YcmFixIt] = []


class YcmMessage(_DaemonModel):
    """GetType and detailed_diagnostic replies."""

    message: str = ""


# ---------------------------------------------------------------------------
# Error variants
# ---------------------------------------------------------------------------


class UnknownExtraConf(_DaemonModel):
    TYPE: Literal["UnknownExtraConf"]
    extra_conf_file: str
    message: str = ""


class NoExtraConfDetected(_DaemonModel):
    TYPE: Literal["NoExtraConfDetected"]
    message: str = ""


class GenericDaemonError(_DaemonModel):
    TYPE: str = "Unknown"
    message: str = ""


KnownDaemonError = Annotated[
    Union[UnknownExtraConf, NoExtraConfDetected],
    Field(discriminator="TYPE"),
]
DaemonError = Union[UnknownExtraConf, NoExtraConfDetected, GenericDaemonError]

_known_errors: TypeAdapter[Any] = TypeAdapter(KnownDaemonError)


def decode_error(body: Any) -> DaemonError:
    """Decode an error body into one of the known variants.

    ycmd error bodies look like ``{"exception": {"TYPE": ...}, "message": ...}``.
    Anything that does not decode into a known variant becomes a
    GenericDaemonError.
    """
    if not isinstance(body, dict):
        return GenericDaemonError(message=str(body))

    message = body.get("message") or ""
    exception = body.get("exception")
    try:
        variant = _known_errors.validate_python(exception)
    except ValidationError:
        type_name = exception.get("TYPE") if isinstance(exception, dict) else None
        return GenericDaemonError(TYPE=str(type_name or "Unknown"), message=str(message))
    return variant.model_copy(update={"message": str(message)})


def confirmation_for(error: DaemonError) -> ConfirmationRequiredError | None:
    """The ConfirmationRequiredError a decoded error stands for, if any."""
    if isinstance(error, UnknownExtraConf):
        return ConfirmationRequiredError(
            ConfirmationKind.UNKNOWN_EXTRA_CONF, error.extra_conf_file, error.message,
        )
    if isinstance(error, NoExtraConfDetected):
        return ConfirmationRequiredError(ConfirmationKind.NO_EXTRA_CONF, None, error.message)
    return None


def embedded_confirmation(body: Any) -> ConfirmationRequiredError | None:
    """Find a confirmation request inside a successful body's ``errors`` list."""
    if not isinstance(body, dict):
        return None
    errors = body.get("errors")
    if not isinstance(errors, list):
        return None
    for entry in errors:
        confirmation = confirmation_for(decode_error(entry))
        if confirmation is not None:
            return confirmation
    return None
