# Check parameter schemas and execution outcomes
#
# Every check kind has a fixed parameter shape. The shapes form a tagged union
# keyed on ``kind``, so the opaque JSON a check definition carries is validated
# exactly once, wherever it crosses a boundary (admin API on the server,
# executor on the agent), and handlers only ever see typed parameters.
import re
from typing import Annotated, Any, Dict, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, field_validator

from shared.errors import CheckValidationError
from shared.models import CheckKind, CheckStatus


class CheckOutcome(BaseModel):
    """
    Result of executing one check on the local machine.

    Attributes:
        status: pass, fail, error or skipped
        message: Human-readable explanation (always present except on some passes)
    """

    model_config = ConfigDict(frozen=True)

    status: CheckStatus
    message: Optional[str] = None

    @classmethod
    def passed(cls, message: Optional[str] = None) -> "CheckOutcome":
        return cls(status=CheckStatus.PASS, message=message)

    @classmethod
    def failed(cls, message: str) -> "CheckOutcome":
        return cls(status=CheckStatus.FAIL, message=message)

    @classmethod
    def errored(cls, message: str) -> "CheckOutcome":
        return cls(status=CheckStatus.ERROR, message=message)

    @classmethod
    def skipped(cls, message: str) -> "CheckOutcome":
        return cls(status=CheckStatus.SKIPPED, message=message)


def _compile_pattern(pattern: str) -> str:
    try:
        re.compile(pattern)
    except re.error as e:
        raise ValueError(f"Invalid regex pattern: {e}")
    return pattern


class _CheckParams(BaseModel):
    # Strict: a port sent as "80" or a path sent as 42 is a data-entry error
    model_config = ConfigDict(strict=True, frozen=True, extra="ignore")


class FileExistsParams(_CheckParams):
    kind: Literal["file_exists"]
    path: str


class FileContentParams(_CheckParams):
    kind: Literal["file_content"]
    path: str
    pattern: str
    should_match: bool = True

    @field_validator("pattern")
    @classmethod
    def check_pattern(cls, value: str) -> str:
        return _compile_pattern(value)


class RegistryKeyParams(_CheckParams):
    """Windows registry lookup. ``path`` starts with a hive prefix such as HKLM\\."""

    kind: Literal["registry_key"]
    path: str
    value_name: Optional[str] = None
    expected: Optional[str] = None


class ConfigSettingParams(_CheckParams):
    kind: Literal["config_setting"]
    file: str
    key: str
    expected: str


class ProcessRunningParams(_CheckParams):
    kind: Literal["process_running"]
    name: str


class PortOpenParams(_CheckParams):
    kind: Literal["port_open"]
    port: int = Field(ge=0, le=65535)


class CommandOutputParams(_CheckParams):
    """
    Shell command whose combined stdout and stderr must match a pattern.

    The command string is executed verbatim by the platform shell. Check
    definitions are trusted administrator input; see SECURITY.md.
    """

    kind: Literal["command_output"]
    command: str
    expected_pattern: str

    @field_validator("expected_pattern")
    @classmethod
    def check_pattern(cls, value: str) -> str:
        return _compile_pattern(value)


CheckParameters = Annotated[
    Union[
        FileExistsParams,
        FileContentParams,
        RegistryKeyParams,
        ConfigSettingParams,
        ProcessRunningParams,
        PortOpenParams,
        CommandOutputParams,
    ],
    Field(discriminator="kind"),
]

_parameters_adapter = TypeAdapter(CheckParameters)


def _describe_validation_error(error: ValidationError, kind: CheckKind) -> str:
    parts = []
    for detail in error.errors():
        location = ".".join(str(part) for part in detail["loc"] if part != kind.value)
        parts.append(f"{location}: {detail['msg']}" if location else detail["msg"])
    return "; ".join(parts)


def parse_check_parameters(check_type: Any, parameters: Any) -> CheckParameters:
    """
    Validate untyped check parameters against the schema of their kind.

    Args:
        check_type: Kind tag, e.g. "file_exists" or a CheckKind member
        parameters: JSON object as received from the server or the admin API

    Returns:
        CheckParameters: The typed parameter model for the kind

    Raises:
        CheckValidationError: Unknown kind, non-object parameters, missing or
            mistyped fields, or a regex that does not compile
    """
    try:
        kind = CheckKind(check_type)
    except ValueError:
        raise CheckValidationError(f"Unknown check type: {check_type}")

    if not isinstance(parameters, dict):
        raise CheckValidationError(
            f"Invalid parameters: expected an object, got {type(parameters).__name__}"
        )

    try:
        return _parameters_adapter.validate_python({**parameters, "kind": kind.value})
    except ValidationError as e:
        raise CheckValidationError(f"Invalid parameters: {_describe_validation_error(e, kind)}") from e


CHECK_TYPE_DESCRIPTIONS: Dict[CheckKind, str] = {
    CheckKind.FILE_EXISTS: "Check if a file exists at the specified path",
    CheckKind.FILE_CONTENT: "Check if file content matches a pattern",
    CheckKind.REGISTRY_KEY: "Check Windows registry key value (Windows only)",
    CheckKind.CONFIG_SETTING: "Check configuration file setting value",
    CheckKind.PROCESS_RUNNING: "Check if a process is running",
    CheckKind.PORT_OPEN: "Check if a port is open/listening",
    CheckKind.COMMAND_OUTPUT: "Check command output matches a pattern",
}


def check_type_description(kind: CheckKind) -> str:
    return CHECK_TYPE_DESCRIPTIONS[CheckKind(kind)]
