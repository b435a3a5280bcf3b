"""Host-facing facade over the plugin registry, invoker and credential vault.

Every operation the UI layer needs goes through PluginService. It holds no
state of its own beyond references to its collaborators; each call spawns its
own plugin process, so calls may run concurrently from any thread.
"""

from __future__ import annotations

import logging

import protocol
from credentials import CredentialVault
from errors import (
    DecodeError,
    InvocationCrashError,
    InvocationError,
    VaultNotFoundError,
)
from plugin_invoker import PluginInvoker
from plugin_registry import PluginRegistry
from schemas import (
    AuthForm,
    ConnectionTreeResponse,
    ExecResponse,
    PluginDescriptor,
    TestConnectionResponse,
)

logger = logging.getLogger(__name__)

# Connection entry naming a vault key. Replaced by CREDENTIAL_BLOB before the
# request leaves the host.
CREDENTIAL_KEY = "credential_key"
CREDENTIAL_BLOB = "credential_blob"


class PluginService:
    def __init__(
        self,
        registry: PluginRegistry,
        invoker: PluginInvoker | None = None,
        vault: CredentialVault | None = None,
    ):
        self.registry = registry
        self.invoker = invoker or PluginInvoker()
        self.vault = vault

    @classmethod
    def from_config(cls) -> PluginService:
        """Service wired to the configured plugin dirs and a fresh credential vault."""
        invoker = PluginInvoker()
        registry = PluginRegistry.from_config(invoker=invoker)
        return cls(registry, invoker, CredentialVault())

    def start(self) -> None:
        self.registry.start()

    def close(self) -> None:
        self.registry.shutdown()
        if self.vault is not None:
            self.vault.close()

    # ------------------------------------------------------------------
    # Registry
    # ------------------------------------------------------------------

    def list_plugins(self) -> list[PluginDescriptor]:
        return self.registry.list_plugins()

    def rescan(self) -> None:
        self.registry.rescan()

    # ------------------------------------------------------------------
    # Credentials
    # ------------------------------------------------------------------

    def store_credential(self, key: str, secret: str) -> None:
        self._require_vault().store(key, secret)

    def delete_credential(self, key: str) -> None:
        self._require_vault().delete(key)

    def _require_vault(self) -> CredentialVault:
        if self.vault is None:
            raise RuntimeError("PluginService was created without a credential vault")
        return self.vault

    def _resolve_connection(self, connection: dict[str, str] | None) -> dict[str, str]:
        """Swap a `credential_key` entry for the secret it names.

        Raises VaultNotFoundError when the key has no stored secret.
        """
        conn = dict(connection or {})
        key = conn.pop(CREDENTIAL_KEY, "")
        if key and self.vault is not None:
            conn[CREDENTIAL_BLOB] = self.vault.get(key)
        elif key:
            conn[CREDENTIAL_KEY] = key
        return conn

    # ------------------------------------------------------------------
    # Plugin calls
    # ------------------------------------------------------------------

    def exec_plugin(
        self,
        name: str,
        connection: dict[str, str] | None,
        query: str,
        options: dict[str, str] | None = None,
    ) -> ExecResponse:
        """Run *query* through plugin *name*.

        Plugin-reported errors come back in-band as ExecResponse.error.
        Timeouts and crashes raise InvocationError subclasses; an unknown
        plugin raises PluginNotFoundError.
        """
        desc = self.registry.get(name)
        payload = protocol.encode_exec_request(self._resolve_connection(connection), query, options)
        logger.info("Exec plugin '%s' (query %d chars)", name, len(query))
        try:
            out = self.invoker.invoke(desc.path, "exec", payload, self.invoker.exec_timeout, plugin_name=name)
        except InvocationCrashError as exc:
            # A non-zero exit that still wrote a proper error envelope is a
            # business error, not a crash.
            resp = protocol.decode_exec_envelope(exc.stdout)
            if resp is None:
                raise
            logger.info("Plugin '%s' reported error: %s", name, resp.error)
            return resp
        finally:
            del payload
        resp = protocol.decode_exec_response(out)
        if resp.error:
            logger.info("Plugin '%s' reported error: %s", name, resp.error)
        return resp

    def exec_tree_action(
        self,
        name: str,
        connection: dict[str, str] | None,
        action_query: str,
        options: dict[str, str] | None = None,
    ) -> ExecResponse:
        """Run the query attached to a connection-tree action."""
        return self.exec_plugin(name, connection, action_query, options)

    def get_plugin_auth_forms(self, name: str) -> dict[str, AuthForm]:
        """Auth forms the plugin offers. Plugins without `authforms` yield {}."""
        desc = self.registry.get(name)
        try:
            out = self.invoker.probe(desc.path, "authforms", plugin_name=name)
            return protocol.decode_auth_forms(out)
        except InvocationError as exc:
            logger.debug("Plugin '%s' has no usable authforms: %s", name, exc)
        except DecodeError as exc:
            logger.warning("Plugin '%s' returned malformed authforms: %s", name, exc)
        return {}

    def get_connection_tree(self, name: str, connection: dict[str, str] | None) -> ConnectionTreeResponse:
        """Browse tree for a connection; empty on any plugin or connection failure."""
        desc = self.registry.get(name)
        try:
            payload = protocol.encode_connection_request(self._resolve_connection(connection))
            out = self.invoker.invoke(
                desc.path, "connection-tree", payload, self.invoker.exec_timeout, plugin_name=name
            )
            return protocol.decode_connection_tree(out)
        except (InvocationError, DecodeError, VaultNotFoundError) as exc:
            logger.warning("Plugin '%s': connection tree unavailable: %s", name, exc)
            return ConnectionTreeResponse()

    def test_connection(self, name: str, connection: dict[str, str] | None) -> TestConnectionResponse:
        desc = self.registry.get(name)
        try:
            payload = protocol.encode_connection_request(self._resolve_connection(connection))
            out = self.invoker.invoke(
                desc.path, "test-connection", payload, self.invoker.exec_timeout, plugin_name=name
            )
            return protocol.decode_test_connection(out)
        except (InvocationError, DecodeError, VaultNotFoundError) as exc:
            logger.info("Plugin '%s': test-connection failed: %s", name, exc)
            return TestConnectionResponse(ok=False, message=str(exc))
