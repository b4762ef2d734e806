from invoicerun.services.plugins.base import InvoicePluginApi
from invoicerun.services.plugins.gateway import (
    NoopPluginGateway,
    PluginChainGateway,
    PluginGateway,
    SinglePluginGateway,
)
from invoicerun.services.plugins.registry import PluginRegistry

__all__ = [
    "InvoicePluginApi",
    "NoopPluginGateway",
    "PluginChainGateway",
    "PluginGateway",
    "PluginRegistry",
    "SinglePluginGateway",
]
