# Check execution engine: runs one check against the local machine
import logging
import os
import platform
import re
import signal
import subprocess
from typing import Any, Callable, Dict, Optional, Tuple

import psutil

from agent.core.host import HostInspector, is_port_in_use
from shared.checks import (
    CheckOutcome,
    CommandOutputParams,
    ConfigSettingParams,
    FileContentParams,
    FileExistsParams,
    PortOpenParams,
    ProcessRunningParams,
    RegistryKeyParams,
    parse_check_parameters,
)
from shared.errors import CheckValidationError, PlatformUnsupportedError
from shared.protocol import AgentCheckDefinition

logger = logging.getLogger(__name__)

DEFAULT_COMMAND_TIMEOUT = 30  # Seconds before a command_output check is killed
OUTPUT_EXCERPT_CHARS = 200  # Command output quoted in failure messages
REAP_TIMEOUT_SECS = 5  # Wait for a killed command to release its pipes

# Accepted registry path prefixes and the winreg hive constant each maps to
REGISTRY_HIVES = {
    "HKEY_LOCAL_MACHINE\\": "HKEY_LOCAL_MACHINE",
    "HKLM\\": "HKEY_LOCAL_MACHINE",
    "HKEY_CURRENT_USER\\": "HKEY_CURRENT_USER",
    "HKCU\\": "HKEY_CURRENT_USER",
}


def split_registry_path(path: str) -> Optional[Tuple[str, str]]:
    """
    Split "HKLM\\SOFTWARE\\Foo" into ("HKEY_LOCAL_MACHINE", "SOFTWARE\\Foo").

    Returns:
        Optional[Tuple[str, str]]: (hive constant name, subkey), or None for an unsupported hive
    """
    upper = path.upper()
    for prefix, hive in REGISTRY_HIVES.items():
        if upper.startswith(prefix):
            return hive, path[len(prefix):]
    return None


class CheckExecutor:
    """
    Evaluates check definitions on the local machine.

    The public contract is execute(check_type, parameters) -> CheckOutcome.
    Parameters are validated into their typed model first; any validation
    problem is an ERROR outcome, never FAIL. Handlers return PASS or FAIL for
    genuine evaluations, ERROR when the evaluation itself is impossible, and
    SKIPPED when the kind does not apply to this platform.

    Security note:
        command_output runs administrator-supplied strings through the
        platform shell with the agent's privileges. Nothing is sanitized;
        check definitions must only be writable by trusted administrators.
        Each command is killed after ``command_timeout`` seconds.
    """

    def __init__(self, host: HostInspector, command_timeout: float = DEFAULT_COMMAND_TIMEOUT):
        """
        Args:
            host (HostInspector): Host handle shared with the snapshot collector
            command_timeout (float): Seconds before a command_output check is aborted
        """
        self.host = host
        self.command_timeout = command_timeout

        self._handlers: Dict[type, Callable[[Any], CheckOutcome]] = {
            FileExistsParams: self._execute_file_exists,
            FileContentParams: self._execute_file_content,
            RegistryKeyParams: self._execute_registry_key,
            ConfigSettingParams: self._execute_config_setting,
            ProcessRunningParams: self._execute_process_running,
            PortOpenParams: self._execute_port_open,
            CommandOutputParams: self._execute_command_output,
        }

    def execute_check(self, check: AgentCheckDefinition) -> CheckOutcome:
        return self.execute(check.check_type, check.parameters)

    def execute(self, check_type: str, parameters: Any) -> CheckOutcome:
        """
        Execute one check and report its outcome.

        Never raises: unknown kinds, bad parameters and unexpected handler
        failures all come back as ERROR outcomes.

        Args:
            check_type (str): Check kind tag, e.g. "file_exists"
            parameters: Untyped parameter object from the check definition

        Returns:
            CheckOutcome: Status and message
        """
        try:
            params = parse_check_parameters(check_type, parameters)
        except CheckValidationError as e:
            return CheckOutcome.errored(str(e))

        handler = self._handlers[type(params)]
        try:
            return handler(params)
        except PlatformUnsupportedError as e:
            return CheckOutcome.skipped(str(e))
        except Exception as e:
            logger.error(f"Unexpected failure executing {check_type} check: {e}")
            return CheckOutcome.errored(f"Check execution failed: {e}")

    def _execute_file_exists(self, params: FileExistsParams) -> CheckOutcome:
        # Relative paths resolve against the agent's working directory
        if os.path.exists(params.path):
            return CheckOutcome.passed(f"File exists: {params.path}")
        return CheckOutcome.failed(f"File not found: {params.path}")

    def _execute_file_content(self, params: FileContentParams) -> CheckOutcome:
        try:
            content = _read_text(params.path)
        except (OSError, UnicodeDecodeError) as e:
            return CheckOutcome.errored(f"Failed to read file {params.path}: {e}")

        matches = re.search(params.pattern, content) is not None
        found = "found" if matches else "not found"

        if matches == params.should_match:
            return CheckOutcome.passed(f"Pattern {found} in file")

        expected = "match" if params.should_match else "no match"
        return CheckOutcome.failed(f"Pattern {found} in file (expected {expected})")

    def _execute_registry_key(self, params: RegistryKeyParams) -> CheckOutcome:
        if platform.system() != "Windows":
            raise PlatformUnsupportedError("Registry checks are only available on Windows")

        import winreg  # Only importable on Windows

        split = split_registry_path(params.path)
        if split is None:
            return CheckOutcome.errored(f"Unsupported registry hive in path: {params.path}")
        hive_name, subkey = split

        try:
            key = winreg.OpenKey(getattr(winreg, hive_name), subkey)
        except OSError as e:
            return CheckOutcome.failed(f"Registry key not found: {params.path} ({e})")

        with key:
            if params.value_name is None:
                return CheckOutcome.passed(f"Registry key exists: {params.path}")

            try:
                value, _value_type = winreg.QueryValueEx(key, params.value_name)
            except OSError as e:
                return CheckOutcome.failed(f"Registry value not found: {params.value_name} ({e})")

        value = str(value)
        if params.expected is None:
            return CheckOutcome.passed(f"Registry value exists: {params.value_name} = {value}")
        if value == params.expected:
            return CheckOutcome.passed(f"Registry value matches: {params.value_name} = {value}")
        return CheckOutcome.failed(
            f"Registry value mismatch: {params.value_name} = {value} (expected {params.expected})"
        )

    def _execute_config_setting(self, params: ConfigSettingParams) -> CheckOutcome:
        try:
            content = _read_text(params.file)
        except (OSError, UnicodeDecodeError) as e:
            return CheckOutcome.errored(f"Failed to read config file {params.file}: {e}")

        # INI-style "key = value" or YAML-ish "key: value"; only the first occurrence counts
        pattern = re.compile(rf"^\s*{re.escape(params.key)}\s*[=:]\s*(.*)$", re.MULTILINE)
        match = pattern.search(content)
        if match is None:
            return CheckOutcome.failed(f"Config setting not found: {params.key} in {params.file}")

        value = match.group(1).strip()
        if value == params.expected:
            return CheckOutcome.passed(f"Config setting matches: {params.key} = {value}")
        return CheckOutcome.failed(
            f"Config setting mismatch: {params.key} = {value} (expected {params.expected})"
        )

    def _execute_process_running(self, params: ProcessRunningParams) -> CheckOutcome:
        # Substring match so "myapp" also finds "MyApp.exe"
        target = params.name.lower()

        for process in self.host.refresh_processes():
            if target in process.name.lower():
                return CheckOutcome.passed(f"Process is running: {process.name}")

        return CheckOutcome.failed(f"Process not running: {params.name}")

    def _execute_port_open(self, params: PortOpenParams) -> CheckOutcome:
        if is_port_in_use(params.port):
            return CheckOutcome.passed(f"Port {params.port} is open/listening")
        return CheckOutcome.failed(f"Port {params.port} is not open/listening")

    def _execute_command_output(self, params: CommandOutputParams) -> CheckOutcome:
        logger.debug(f"Running check command: {params.command}")

        try:
            stdout, stderr = self._run_shell(params.command)
        except subprocess.TimeoutExpired:
            logger.warning(f"Check command timed out after {self.command_timeout}s: {params.command}")
            return CheckOutcome.errored(f"Command timed out after {self.command_timeout} seconds")
        except OSError as e:
            return CheckOutcome.errored(f"Failed to execute command: {e}")

        combined = stdout.decode(errors="replace") + stderr.decode(errors="replace")

        if re.search(params.expected_pattern, combined):
            return CheckOutcome.passed("Command output matches expected pattern")
        return CheckOutcome.failed(
            f"Command output does not match pattern. Output: {combined[:OUTPUT_EXCERPT_CHARS]}"
        )

    def _run_shell(self, command: str) -> Tuple[bytes, bytes]:
        """
        Run a command through the platform shell (cmd on Windows, sh elsewhere).

        A timeout kills every process the command spawned, not just the shell:
        on POSIX the shell leads its own process group, elsewhere the process
        tree is walked with psutil.

        Raises:
            subprocess.TimeoutExpired: The command exceeded command_timeout
            OSError: The shell could not be started
        """
        posix = platform.system() != "Windows"

        with subprocess.Popen(
            command,
            shell=True,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            start_new_session=posix,
        ) as process:
            try:
                return process.communicate(timeout=self.command_timeout)
            except subprocess.TimeoutExpired:
                if posix:
                    try:
                        os.killpg(process.pid, signal.SIGKILL)
                    except ProcessLookupError:
                        pass
                else:
                    kill_process_tree(process.pid)
                process.communicate(timeout=REAP_TIMEOUT_SECS)
                raise


def kill_process_tree(pid: int):
    """Kill a process and all of its descendants; ones that already exited are ignored."""
    try:
        parent = psutil.Process(pid)
        # Collected before the parent dies and its children are reparented
        processes = parent.children(recursive=True) + [parent]
    except psutil.NoSuchProcess:
        return

    for proc in processes:
        try:
            proc.kill()
        except psutil.NoSuchProcess:
            pass


def _read_text(path: str) -> str:
    with open(path, "r", encoding="utf-8") as f:
        return f.read()
