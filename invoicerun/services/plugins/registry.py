from __future__ import annotations

import logging

from invoicerun.core.config import get_settings
from invoicerun.core.errors import PluginConfigError
from invoicerun.services.plugins.base import InvoicePluginApi
from invoicerun.services.plugins.gateway import (
    NoopPluginGateway,
    PluginChainGateway,
    PluginGateway,
    SinglePluginGateway,
)


logger = logging.getLogger(__name__)


class PluginRegistry:
    """Named invoice plugins in registration order."""

    def __init__(self) -> None:
        self._plugins: dict[str, InvoicePluginApi] = {}

    def register(self, name: str, plugin: InvoicePluginApi) -> None:
        if not name:
            raise PluginConfigError("plugin name is required")
        if name in self._plugins:
            raise PluginConfigError(f"plugin {name} is already registered")
        self._plugins[name] = plugin
        logger.info("invoice_plugin_registered name=%s", name)

    def unregister(self, name: str) -> None:
        if self._plugins.pop(name, None) is not None:
            logger.info("invoice_plugin_unregistered name=%s", name)

    def names(self) -> list[str]:
        return list(self._plugins)

    def lookup(self, name: str) -> InvoicePluginApi | None:
        return self._plugins.get(name)

    def gateway(self, *, plugin_name: str | None = None, timeout_ms: int | None = None) -> PluginGateway:
        # No plugin -> no-op gateway, one plugin -> single, several -> chain.
        settings = get_settings()
        timeout_ms = timeout_ms or settings.plugin_call_timeout_ms
        plugin_name = plugin_name if plugin_name is not None else settings.plugin_name
        if plugin_name:
            plugin = self.lookup(plugin_name)
            if plugin is None:
                logger.warning("invoice_plugin_missing name=%s", plugin_name)
                return NoopPluginGateway()
            return SinglePluginGateway(plugin_name, plugin, timeout_ms=timeout_ms)
        gateways = [
            SinglePluginGateway(name, plugin, timeout_ms=timeout_ms) for name, plugin in self._plugins.items()
        ]
        if not gateways:
            return NoopPluginGateway()
        if len(gateways) == 1:
            return gateways[0]
        return PluginChainGateway(gateways)
