import sys
import textwrap
from pathlib import Path

import pytest

import credentials

REPO_ROOT = Path(__file__).resolve().parents[1]
PLUGINS_DIR = REPO_ROOT / "plugins"

ECHO_INFO = '{"name": "Echo", "version": "1.2.0", "type": "DRIVER", "capabilities": ["query"]}'


def write_executable(path: Path, body: str) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(body)
    path.chmod(0o755)
    return path


@pytest.fixture
def make_plugin(tmp_path):
    """Factory writing a /bin/sh plugin: make_plugin(name, script, directory=None)."""

    def _make(name: str, script: str, directory: Path | None = None) -> Path:
        directory = directory or tmp_path / "plugins"
        return write_executable(directory / name, "#!/bin/sh\n" + textwrap.dedent(script).lstrip())

    return _make


@pytest.fixture
def echo_plugin(make_plugin):
    """Answers info, echoes stdin for exec, fails everything else."""
    return make_plugin(
        "echo",
        f"""
        case "$1" in
          info) echo '{ECHO_INFO}' ;;
          exec) cat ;;
          *) echo "unsupported command $1" >&2; exit 1 ;;
        esac
        """,
    )


@pytest.fixture
def sqlite_plugin(tmp_path):
    """Launcher for the bundled sqlite reference plugin under the test interpreter."""
    return write_executable(
        tmp_path / "plugins" / "sqlite",
        f'#!/bin/sh\nexec "{sys.executable}" "{PLUGINS_DIR / "sqlite"}" "$@"\n',
    )


@pytest.fixture
def fake_keyring(monkeypatch):
    """In-memory stand-in for the platform keyring; returns the backing dict."""
    store: dict[tuple[str, str], str] = {}

    def set_password(service, key, secret):
        store[(service, key)] = secret

    def get_password(service, key):
        return store.get((service, key))

    def delete_password(service, key):
        if (service, key) not in store:
            raise credentials.PasswordDeleteError(key)
        del store[(service, key)]

    monkeypatch.setattr(credentials.keyring, "set_password", set_password)
    monkeypatch.setattr(credentials.keyring, "get_password", get_password)
    monkeypatch.setattr(credentials.keyring, "delete_password", delete_password)
    return store


@pytest.fixture
def no_keyring(monkeypatch):
    monkeypatch.setattr(credentials, "probe_keyring", lambda service: False)


@pytest.fixture(autouse=True)
def _no_vault_key_env(monkeypatch):
    monkeypatch.delenv("QUERYBOX_VAULT_KEY", raising=False)
