import pytest
from pydantic import ValidationError

from shared.checks import (
    CHECK_TYPE_DESCRIPTIONS,
    CheckOutcome,
    CommandOutputParams,
    ConfigSettingParams,
    FileContentParams,
    FileExistsParams,
    PortOpenParams,
    ProcessRunningParams,
    RegistryKeyParams,
    check_type_description,
    parse_check_parameters,
)
from shared.errors import CheckValidationError
from shared.models import CheckKind, CheckStatus


class TestCheckOutcome:
    def test_constructors(self):
        assert CheckOutcome.passed().status == CheckStatus.PASS
        assert CheckOutcome.passed().message is None
        assert CheckOutcome.failed("nope").status == CheckStatus.FAIL
        assert CheckOutcome.errored("broken").status == CheckStatus.ERROR
        assert CheckOutcome.skipped("n/a").message == "n/a"

    def test_outcome_is_immutable(self):
        outcome = CheckOutcome.failed("nope")
        with pytest.raises(ValidationError):
            outcome.status = CheckStatus.PASS


class TestParseCheckParameters:
    @pytest.mark.parametrize(
        "check_type, parameters, expected_type",
        [
            ("file_exists", {"path": "/etc/hosts"}, FileExistsParams),
            ("file_content", {"path": "/etc/hosts", "pattern": "localhost"}, FileContentParams),
            ("registry_key", {"path": "HKLM\\SOFTWARE\\Foo"}, RegistryKeyParams),
            ("config_setting", {"file": "/etc/app.conf", "key": "mode", "expected": "on"}, ConfigSettingParams),
            ("process_running", {"name": "sshd"}, ProcessRunningParams),
            ("port_open", {"port": 22}, PortOpenParams),
            ("command_output", {"command": "echo hi", "expected_pattern": "hi"}, CommandOutputParams),
        ],
    )
    def test_each_kind_parses_to_its_model(self, check_type, parameters, expected_type):
        params = parse_check_parameters(check_type, parameters)
        assert isinstance(params, expected_type)
        assert params.kind == check_type

    def test_accepts_enum_member(self):
        params = parse_check_parameters(CheckKind.PORT_OPEN, {"port": 443})
        assert params.port == 443

    def test_unknown_kind(self):
        with pytest.raises(CheckValidationError, match="Unknown check type: ping_host"):
            parse_check_parameters("ping_host", {})

    def test_parameters_must_be_an_object(self):
        with pytest.raises(CheckValidationError, match="expected an object"):
            parse_check_parameters("file_exists", ["/etc/hosts"])

    def test_missing_field(self):
        with pytest.raises(CheckValidationError, match="path"):
            parse_check_parameters("file_exists", {})

    def test_port_given_as_string_is_rejected(self):
        with pytest.raises(CheckValidationError):
            parse_check_parameters("port_open", {"port": "80"})

    @pytest.mark.parametrize("port", [-1, 65536, 100000])
    def test_port_out_of_range(self, port):
        with pytest.raises(CheckValidationError):
            parse_check_parameters("port_open", {"port": port})

    @pytest.mark.parametrize("port", [0, 65535])
    def test_port_bounds_are_inclusive(self, port):
        assert parse_check_parameters("port_open", {"port": port}).port == port

    def test_bool_is_not_a_port(self):
        with pytest.raises(CheckValidationError):
            parse_check_parameters("port_open", {"port": True})

    def test_invalid_file_content_regex(self):
        with pytest.raises(CheckValidationError, match="Invalid regex pattern"):
            parse_check_parameters("file_content", {"path": "/etc/hosts", "pattern": "[unclosed"})

    def test_invalid_command_output_regex(self):
        with pytest.raises(CheckValidationError, match="Invalid regex pattern"):
            parse_check_parameters("command_output", {"command": "true", "expected_pattern": "(?P<"})

    def test_should_match_defaults_to_true(self):
        params = parse_check_parameters("file_content", {"path": "/x", "pattern": "a"})
        assert params.should_match is True

    def test_should_match_must_be_bool(self):
        with pytest.raises(CheckValidationError):
            parse_check_parameters("file_content", {"path": "/x", "pattern": "a", "should_match": "no"})

    def test_registry_optional_fields(self):
        params = parse_check_parameters("registry_key", {"path": "HKCU\\Software"})
        assert params.value_name is None
        assert params.expected is None

    def test_unrelated_keys_are_ignored(self):
        params = parse_check_parameters("process_running", {"name": "nginx", "comment": "web"})
        assert params.name == "nginx"

    def test_kind_in_parameters_cannot_override_check_type(self):
        params = parse_check_parameters("file_exists", {"kind": "port_open", "path": "/tmp"})
        assert isinstance(params, FileExistsParams)


class TestCheckTypeDescriptions:
    def test_every_kind_is_described(self):
        assert set(CHECK_TYPE_DESCRIPTIONS) == set(CheckKind)

    def test_lookup_by_string(self):
        assert check_type_description("registry_key") == "Check Windows registry key value (Windows only)"
