"""Exception hierarchy shared by the plugin engine and the credential vault."""

from __future__ import annotations


class QueryboxError(Exception):
    """Base class for every error raised by querybox components."""


class PluginNotFoundError(QueryboxError):
    def __init__(self, name: str, reason: str = "plugin not found"):
        super().__init__(f"{reason}: {name}")
        self.name = name


class DiscoveryError(QueryboxError):
    """A plugin directory could not be enumerated. Logged; the scan continues."""


class ProbeError(QueryboxError):
    """An info/authforms probe failed. Recorded on the descriptor, never fatal."""


class InvocationError(QueryboxError):
    """A plugin process could not produce a usable response."""


class InvocationTimeoutError(InvocationError):
    def __init__(self, command: str, timeout: float):
        super().__init__(f"plugin {command} timed out after {timeout:g}s")
        self.command = command
        self.timeout = timeout


class InvocationCrashError(InvocationError):
    """Non-zero exit or spawn failure. The message is the plugin's stderr when it has one."""

    def __init__(
        self,
        message: str,
        *,
        returncode: int | None = None,
        stderr: str = "",
        stdout: bytes = b"",
    ):
        super().__init__(message)
        self.returncode = returncode
        self.stderr = stderr
        self.stdout = stdout


class DecodeError(QueryboxError):
    """Plugin output could not be decoded into the expected response shape."""


class VaultError(QueryboxError):
    pass


class VaultNotFoundError(VaultError, KeyError):
    def __init__(self, key: str):
        super().__init__(f"credential not found: {key}")
        self.key = key

    def __str__(self) -> str:
        # KeyError would otherwise repr() the message
        return self.args[0]


class VaultEmptyKeyError(VaultError, ValueError):
    def __init__(self):
        super().__init__("empty key")
