"""Plugin discovery for querybox.

Scans an ordered list of plugin directories (user directory first, bundled
directory second) for executables, probes each new one with `info`, and keeps
an in-memory registry keyed by filename. A background thread repeats the scan
on a fixed interval; rescan() forces one immediately.

Probe failures never hide a plugin: the descriptor is listed with its
last_probe_error set. Descriptors disappear only when their file does.
"""

from __future__ import annotations

import logging
import os
import shutil
import stat
import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from pathlib import Path
from typing import Callable, Sequence

import config
import protocol
from errors import DecodeError, DiscoveryError, InvocationError, PluginNotFoundError, ProbeError
from plugin_invoker import REAP_TIMEOUT, PluginInvoker
from schemas import PluginDescriptor, PluginInfo

logger = logging.getLogger(__name__)

_WINDOWS_EXTS = (".exe", ".bat", ".cmd")

# (path, name) -> PluginInfo; raises ProbeError on failure
ProbeFunc = Callable[[Path, str], PluginInfo]
# Sleeps for the interval; returns True when the loop should stop.
WaitFunc = Callable[[float], bool]

# Candidate paths and their mtimes at the time a name was last probed.
_Signature = tuple[tuple[str, float], ...]


def is_executable(path: str | Path) -> bool:
    """True for a regular file with an execute bit (or a Windows executable extension)."""
    try:
        st = os.stat(path)
    except OSError:
        return False
    if not stat.S_ISREG(st.st_mode):
        return False
    if os.name == "nt":
        return Path(path).suffix.lower() in _WINDOWS_EXTS
    return bool(st.st_mode & (stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH))


def plugin_key(filename: str) -> str:
    """Registry key for an executable: the filename minus any platform extension."""
    if os.name == "nt":
        stem, ext = os.path.splitext(filename)
        if ext.lower() in _WINDOWS_EXTS:
            return stem
    return filename


def sync_bundled_plugins(bundled_dir: Path, user_dir: Path) -> list[str]:
    """Copy every bundled executable into *user_dir*, overwriting older copies.

    Returns the copied filenames. A missing bundle directory copies nothing.
    """
    copied: list[str] = []
    if not bundled_dir.is_dir():
        return copied
    if bundled_dir.resolve() == user_dir.resolve():
        return copied
    user_dir.mkdir(parents=True, exist_ok=True)
    for entry in sorted(bundled_dir.iterdir()):
        if not is_executable(entry):
            continue
        target = user_dir / entry.name
        try:
            shutil.copy2(entry, target)
            target.chmod(target.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
        except OSError as exc:
            logger.warning("Could not copy bundled plugin %s to %s: %s", entry, user_dir, exc)
            continue
        copied.append(entry.name)
    if copied:
        logger.info("Synced %d bundled plugin(s) into %s", len(copied), user_dir)
    return copied


def _mtime(path: Path) -> float:
    try:
        return path.stat().st_mtime
    except OSError:
        return 0.0


class PluginRegistry:
    """Thread-safe registry of discovered plugin executables.

    Args:
        dirs: directories to scan, highest precedence first.
        invoker: used by the default probe; ignored when *probe* is given.
        probe: callable returning PluginInfo for (path, name) or raising.
        scan_interval: seconds between background passes.
        wait: ticker for the background loop. Defaults to waiting on the
            internal stop event, so shutdown() wakes it immediately.
    """

    def __init__(
        self,
        dirs: Sequence[str | Path],
        *,
        invoker: PluginInvoker | None = None,
        probe: ProbeFunc | None = None,
        scan_interval: float = config.SCAN_INTERVAL,
        wait: WaitFunc | None = None,
        max_workers: int = 8,
    ):
        self.dirs = [Path(d) for d in dirs]
        self.scan_interval = scan_interval
        self._invoker = invoker or PluginInvoker()
        self._probe = probe or self._probe_info
        self._stop = threading.Event()
        self._wait = wait or self._stop.wait
        self._max_workers = max_workers

        self._lock = threading.Lock()  # guards _plugins / _signatures only
        self._scan_lock = threading.Lock()  # one scan at a time
        self._plugins: dict[str, PluginDescriptor] = {}
        self._signatures: dict[str, _Signature] = {}
        self._thread: threading.Thread | None = None

    @classmethod
    def from_config(cls, **kwargs) -> PluginRegistry:
        """Registry over the configured user and bundled dirs, with bundled plugins synced in."""
        user_dir = config.user_plugin_dir()
        bundled_dir = config.bundled_plugin_dir()
        try:
            user_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            logger.warning("Cannot create plugin directory %s: %s", user_dir, exc)
        sync_bundled_plugins(bundled_dir, user_dir)
        return cls([user_dir, bundled_dir], **kwargs)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def list_plugins(self) -> list[PluginDescriptor]:
        """Snapshot of all descriptors, sorted by name. Never spawns a process."""
        with self._lock:
            plugins = list(self._plugins.values())
        return sorted((p.model_copy(deep=True) for p in plugins), key=lambda p: p.name)

    def get(self, name: str) -> PluginDescriptor:
        """Return the descriptor for *name* if its executable is still usable."""
        with self._lock:
            desc = self._plugins.get(name)
        if desc is None:
            raise PluginNotFoundError(name)
        if not is_executable(desc.path):
            raise PluginNotFoundError(name, "plugin is not executable")
        return desc.model_copy(deep=True)

    # ------------------------------------------------------------------
    # Discovery
    # ------------------------------------------------------------------

    def rescan(self) -> None:
        """Run a discovery pass now. Waits for any pass already in progress."""
        self.scan_once()

    def _probe_info(self, path: Path, name: str) -> PluginInfo:
        try:
            out = self._invoker.probe(path, "info", plugin_name=name)
            return protocol.decode_info(out)
        except (InvocationError, DecodeError) as exc:
            raise ProbeError(f"probe info failed: {exc}") from exc

    def _list_dir(self, directory: Path) -> list[Path]:
        try:
            with os.scandir(directory) as it:
                return sorted(Path(e.path) for e in it)
        except FileNotFoundError:
            return []
        except OSError as exc:
            raise DiscoveryError(f"cannot list plugin directory {directory}: {exc}") from exc

    def _discover(self) -> tuple[dict[str, list[Path]], list[Path]]:
        found: dict[str, list[Path]] = {}
        unreadable: list[Path] = []
        for directory in self.dirs:
            try:
                entries = self._list_dir(directory)
            except DiscoveryError as exc:
                logger.warning("%s", exc)
                unreadable.append(directory)
                continue
            for path in entries:
                if is_executable(path):
                    found.setdefault(plugin_key(path.name), []).append(path)
        return found, unreadable

    def _build(self, name: str, candidates: list[Path], now: datetime) -> PluginDescriptor:
        """Probe candidates in precedence order; first healthy one wins."""
        first_error = ""
        for path in candidates:
            try:
                info = self._probe(path, name)
            except Exception as exc:
                logger.warning("Plugin '%s': %s (%s)", name, exc, path)
                first_error = first_error or str(exc)
                continue
            desc = PluginDescriptor(name=name, path=str(path), discovered_at=now, modified_at=_mtime(path))
            return desc.with_info(info)
        primary = candidates[0]
        return PluginDescriptor(
            name=name,
            path=str(primary),
            discovered_at=now,
            modified_at=_mtime(primary),
            last_probe_error=first_error,
        )

    def scan_once(self) -> None:
        """One discovery pass: probe new or changed executables, drop vanished ones."""
        with self._scan_lock:
            found, unreadable = self._discover()
            signatures = {
                name: tuple((str(p), _mtime(p)) for p in paths) for name, paths in found.items()
            }
            with self._lock:
                stale = [n for n in found if self._signatures.get(n) != signatures[n]]

            now = datetime.now()
            built: dict[str, PluginDescriptor] = {}
            if stale:
                workers = max(1, min(self._max_workers, len(stale)))
                with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="plugin-probe") as pool:
                    futures = {n: pool.submit(self._build, n, found[n], now) for n in stale}
                for name, future in futures.items():
                    built[name] = future.result()

            with self._lock:
                for name, desc in built.items():
                    previous = self._plugins.get(name)
                    if previous is not None and previous.path == desc.path:
                        desc = desc.model_copy(update={"discovered_at": previous.discovered_at})
                    self._plugins[name] = desc
                    self._signatures[name] = signatures[name]
                removed = [
                    n
                    for n, d in self._plugins.items()
                    if n not in found and Path(d.path).parent not in unreadable
                ]
                for name in removed:
                    del self._plugins[name]
                    self._signatures.pop(name, None)

            for name in stale:
                logger.info("Plugin '%s' registered from %s", name, built[name].path)
            for name in removed:
                logger.info("Plugin '%s' removed", name)

    # ------------------------------------------------------------------
    # Background loop
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Run an initial scan synchronously, then keep scanning in the background."""
        if self._thread is not None:
            return
        self.scan_once()
        self._thread = threading.Thread(target=self._run, name="plugin-scan", daemon=True)
        self._thread.start()

    def _run(self) -> None:
        while not self._wait(self.scan_interval):
            if self._stop.is_set():
                break
            try:
                self.scan_once()
            except Exception:
                logger.exception("Plugin scan failed")

    def shutdown(self, timeout: float | None = None) -> None:
        """Stop the background loop; waits at most for one in-flight probe to give up."""
        self._stop.set()
        thread, self._thread = self._thread, None
        if thread is None:
            return
        if timeout is None:
            timeout = self._invoker.probe_timeout + REAP_TIMEOUT + 1.0
        thread.join(timeout)
        if thread.is_alive():
            logger.warning("Plugin scan thread still running after %.1fs; abandoning it", timeout)

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()
