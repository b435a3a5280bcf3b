"""Run one plugin command in a fresh process under a deadline.

Plugins are never kept resident: every call spawns ``<executable> <command>``,
writes the request to stdin, and reads the response from stdout. On deadline
expiry the whole process group is killed and the call fails with
InvocationTimeoutError; partial output is discarded.
"""

from __future__ import annotations

import logging
import os
import signal
import subprocess
import time
from pathlib import Path

import config
from errors import InvocationCrashError, InvocationTimeoutError

logger = logging.getLogger(__name__)

# Seconds to wait for a killed child to be reaped before giving up on it.
REAP_TIMEOUT = 5.0


def _spawn_kwargs() -> dict:
    if os.name == "nt":
        # No console window flashing up for every call.
        return {"creationflags": getattr(subprocess, "CREATE_NO_WINDOW", 0)}
    # Own process group so a timeout also takes down any grandchildren.
    return {"start_new_session": True}


def _kill(proc: subprocess.Popen) -> None:
    if os.name != "nt":
        try:
            os.killpg(proc.pid, signal.SIGKILL)
            return
        except (ProcessLookupError, PermissionError):
            pass
    try:
        proc.kill()
    except ProcessLookupError:
        pass


class PluginInvoker:
    """Executes plugin commands. Stateless; safe to share between threads."""

    def __init__(
        self,
        exec_timeout: float = config.EXEC_TIMEOUT,
        probe_timeout: float = config.PROBE_TIMEOUT,
    ):
        self.exec_timeout = exec_timeout
        self.probe_timeout = probe_timeout

    def invoke(
        self,
        path: str | Path,
        command: str,
        payload: bytes | None = None,
        timeout: float | None = None,
        *,
        plugin_name: str | None = None,
    ) -> bytes:
        """Run `path command` and return its stdout.

        Raises:
            InvocationTimeoutError: the deadline passed; the process was killed.
            InvocationCrashError: spawn failure or non-zero exit. The message is
                the plugin's stderr when it wrote any.
        """
        timeout = self.exec_timeout if timeout is None else timeout
        name = plugin_name or Path(path).stem
        env = dict(os.environ)
        env[config.PLUGIN_NAME_ENV] = name

        started = time.monotonic()
        try:
            proc = subprocess.Popen(
                [str(path), command],
                stdin=subprocess.PIPE if payload is not None else subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                env=env,
                **_spawn_kwargs(),
            )
        except OSError as exc:
            logger.error("Plugin '%s': failed to start %s: %s", name, command, exc)
            raise InvocationCrashError(f"failed to start plugin: {exc}") from exc

        try:
            stdout, stderr = proc.communicate(input=payload, timeout=timeout)
        except subprocess.TimeoutExpired:
            _kill(proc)
            try:
                proc.communicate(timeout=REAP_TIMEOUT)
            except subprocess.TimeoutExpired:
                logger.error("Plugin '%s': process %s did not exit after kill", name, proc.pid)
            logger.error("Plugin '%s': %s timed out after %gs", name, command, timeout)
            raise InvocationTimeoutError(command, timeout) from None

        elapsed = time.monotonic() - started
        if proc.returncode != 0:
            err_text = stderr.decode("utf-8", errors="replace").strip()
            logger.error(
                "Plugin '%s': %s exited with status %s after %.2fs",
                name,
                command,
                proc.returncode,
                elapsed,
            )
            raise InvocationCrashError(
                err_text or f"plugin exited with status {proc.returncode}",
                returncode=proc.returncode,
                stderr=err_text,
                stdout=stdout,
            )
        logger.debug("Plugin '%s': %s returned %d bytes in %.2fs", name, command, len(stdout), elapsed)
        return stdout

    def probe(self, path: str | Path, command: str, *, plugin_name: str | None = None) -> bytes:
        """Short-deadline call used for info / authforms capability probes."""
        return self.invoke(path, command, None, self.probe_timeout, plugin_name=plugin_name)
