"""Tests for plugin discovery, precedence, re-probing and the background scan loop."""

import os
import queue
import threading
import time
from pathlib import Path

import pytest

from errors import DiscoveryError, PluginNotFoundError, ProbeError
from plugin_invoker import PluginInvoker
from plugin_registry import PluginRegistry, sync_bundled_plugins
from schemas import PluginInfo

pytestmark = pytest.mark.skipif(os.name == "nt", reason="fake plugins are POSIX shell scripts")


class CountingProbe:
    """Probe stand-in: records calls, fails for paths listed in `failing`."""

    def __init__(self, failing=()):
        self.calls: list[tuple[Path, str]] = []
        self.failing = set(failing)
        self.lock = threading.Lock()

    def __call__(self, path: Path, name: str) -> PluginInfo:
        with self.lock:
            self.calls.append((path, name))
        if path in self.failing or path.parent in self.failing:
            raise ProbeError(f"probe info failed: {path} is broken")
        return PluginInfo(name=f"Fake {name}", version="1.0", type=1)


def _wait_until(predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.02)
    return False


def test_discovers_executables_and_skips_other_files(tmp_path, make_plugin):
    make_plugin("pg", "exit 0")
    make_plugin("mysql", "exit 0")
    (tmp_path / "plugins" / "README.txt").write_text("not a plugin")
    (tmp_path / "plugins" / "subdir").mkdir()
    registry = PluginRegistry([tmp_path / "plugins"], probe=CountingProbe())
    registry.scan_once()
    plugins = registry.list_plugins()
    assert [p.name for p in plugins] == ["mysql", "pg"]
    assert plugins[0].display_name == "Fake mysql"
    assert plugins[0].last_probe_error == ""


def test_real_probe_reads_info(tmp_path, echo_plugin):
    registry = PluginRegistry([echo_plugin.parent], invoker=PluginInvoker(probe_timeout=5))
    registry.rescan()
    (desc,) = registry.list_plugins()
    assert desc.name == "echo"
    assert desc.display_name == "Echo"
    assert desc.version == "1.2.0"
    assert desc.type == 1
    assert desc.capabilities == ["query"]
    assert desc.path == str(echo_plugin)


def test_probe_failure_still_lists_plugin(tmp_path, make_plugin):
    make_plugin("broken", 'echo "cannot load driver" >&2; exit 1')
    registry = PluginRegistry([tmp_path / "plugins"], invoker=PluginInvoker(probe_timeout=5))
    registry.rescan()
    (desc,) = registry.list_plugins()
    assert desc.name == "broken"
    assert desc.last_probe_error.startswith("probe info failed:")
    assert "cannot load driver" in desc.last_probe_error
    assert registry.get("broken").path == desc.path


def test_removed_file_disappears_on_rescan(tmp_path, make_plugin):
    plugin = make_plugin("pg", "exit 0")
    registry = PluginRegistry([plugin.parent], probe=CountingProbe())
    registry.rescan()
    assert [p.name for p in registry.list_plugins()] == ["pg"]
    plugin.unlink()
    registry.rescan()
    assert registry.list_plugins() == []
    with pytest.raises(PluginNotFoundError):
        registry.get("pg")


def test_user_dir_takes_precedence(tmp_path, make_plugin):
    user = make_plugin("pg", "exit 0", tmp_path / "user")
    make_plugin("pg", "exit 0", tmp_path / "bundled")
    probe = CountingProbe()
    registry = PluginRegistry([tmp_path / "user", tmp_path / "bundled"], probe=probe)
    registry.rescan()
    assert registry.get("pg").path == str(user)
    assert len(probe.calls) == 1


def test_bundled_copy_used_when_user_copy_fails(tmp_path, make_plugin):
    make_plugin("pg", "exit 0", tmp_path / "user")
    bundled = make_plugin("pg", "exit 0", tmp_path / "bundled")
    probe = CountingProbe(failing=[tmp_path / "user"])
    registry = PluginRegistry([tmp_path / "user", tmp_path / "bundled"], probe=probe)
    registry.rescan()
    desc = registry.get("pg")
    assert desc.path == str(bundled)
    assert desc.last_probe_error == ""


def test_all_candidates_failing_reports_primary(tmp_path, make_plugin):
    user = make_plugin("pg", "exit 0", tmp_path / "user")
    make_plugin("pg", "exit 0", tmp_path / "bundled")
    probe = CountingProbe(failing=[tmp_path / "user", tmp_path / "bundled"])
    registry = PluginRegistry([tmp_path / "user", tmp_path / "bundled"], probe=probe)
    registry.rescan()
    desc = registry.get("pg")
    assert desc.path == str(user)
    assert "user" in desc.last_probe_error


def test_unchanged_plugins_are_not_reprobed(tmp_path, make_plugin):
    plugin = make_plugin("pg", "exit 0")
    probe = CountingProbe()
    registry = PluginRegistry([plugin.parent], probe=probe)
    registry.rescan()
    first_seen = registry.get("pg").discovered_at
    registry.rescan()
    assert len(probe.calls) == 1

    st = plugin.stat()
    os.utime(plugin, (st.st_atime, st.st_mtime + 10))
    registry.rescan()
    assert len(probe.calls) == 2
    assert registry.get("pg").discovered_at == first_seen


def test_get_rejects_file_that_lost_execute_bit(tmp_path, make_plugin):
    plugin = make_plugin("pg", "exit 0")
    registry = PluginRegistry([plugin.parent], probe=CountingProbe())
    registry.rescan()
    plugin.chmod(0o644)
    with pytest.raises(PluginNotFoundError, match="not executable"):
        registry.get("pg")


def test_list_returns_copies(tmp_path, make_plugin):
    make_plugin("pg", "exit 0")
    registry = PluginRegistry([tmp_path / "plugins"], probe=CountingProbe())
    registry.rescan()
    registry.list_plugins()[0].tags.append("mutated")
    assert registry.list_plugins()[0].tags == []


def test_unreadable_dir_keeps_entries(tmp_path, make_plugin, monkeypatch):
    make_plugin("pg", "exit 0")
    registry = PluginRegistry([tmp_path / "plugins"], probe=CountingProbe())
    registry.rescan()

    def unreadable(directory):
        raise DiscoveryError(f"cannot list plugin directory {directory}: permission denied")

    monkeypatch.setattr(registry, "_list_dir", unreadable)
    registry.rescan()
    assert [p.name for p in registry.list_plugins()] == ["pg"]


def test_missing_dirs_are_fine(tmp_path):
    registry = PluginRegistry([tmp_path / "nope", tmp_path / "also-nope"], probe=CountingProbe())
    registry.rescan()
    assert registry.list_plugins() == []


def test_list_does_not_wait_for_probes(tmp_path, make_plugin):
    make_plugin("slow", "exit 0")
    release = threading.Event()
    started = threading.Event()

    def blocking_probe(path, name):
        started.set()
        release.wait(5)
        return PluginInfo(name="Slow")

    registry = PluginRegistry([tmp_path / "plugins"], probe=blocking_probe)
    scan = threading.Thread(target=registry.rescan)
    scan.start()
    try:
        assert started.wait(5)
        assert registry.list_plugins() == []
    finally:
        release.set()
        scan.join(5)
    assert [p.display_name for p in registry.list_plugins()] == ["Slow"]


def test_sync_bundled_plugins(tmp_path, make_plugin):
    bundled = tmp_path / "bundled"
    make_plugin("pg", "echo new", bundled)
    (bundled / "notes.txt").write_text("ignored")
    user = tmp_path / "user"
    make_plugin("pg", "echo old", user)

    assert sync_bundled_plugins(bundled, user) == ["pg"]
    assert "echo new" in (user / "pg").read_text()
    assert os.access(user / "pg", os.X_OK)
    assert not (user / "notes.txt").exists()
    assert sync_bundled_plugins(tmp_path / "missing", user) == []


def test_background_loop_with_fake_ticker(tmp_path, make_plugin):
    ticks: queue.Queue = queue.Queue()
    registry = PluginRegistry(
        [tmp_path / "plugins"],
        probe=CountingProbe(),
        wait=lambda interval: ticks.get(timeout=5),
    )
    registry.start()
    assert registry.running
    assert registry.list_plugins() == []

    make_plugin("pg", "exit 0")
    ticks.put(False)
    assert _wait_until(lambda: [p.name for p in registry.list_plugins()] == ["pg"])

    ticks.put(True)
    registry.shutdown(timeout=5)
    assert not registry.running


def test_shutdown_wakes_sleeping_loop(tmp_path):
    registry = PluginRegistry([tmp_path / "plugins"], probe=CountingProbe(), scan_interval=60)
    registry.start()
    started = time.monotonic()
    registry.shutdown()
    assert time.monotonic() - started < 2
    assert not registry.running
