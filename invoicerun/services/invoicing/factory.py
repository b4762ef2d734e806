from __future__ import annotations

import importlib
import logging

from invoicerun.core.config import get_settings
from invoicerun.core.errors import PluginConfigError
from invoicerun.services.invoicing.collaborators import BillingEventSource, CreditRebalancer, EventBus
from invoicerun.services.invoicing.coordinator import RunCoordinator
from invoicerun.services.invoicing.event_bus import get_event_bus
from invoicerun.services.plugins.registry import PluginRegistry


logger = logging.getLogger(__name__)

_coordinator: RunCoordinator | None = None


def build_coordinator(
    billing_source: BillingEventSource,
    *,
    registry: PluginRegistry | None = None,
    rebalancer: CreditRebalancer | None = None,
    event_bus: EventBus | None = None,
) -> RunCoordinator:
    return RunCoordinator(
        billing_source,
        registry=registry,
        rebalancer=rebalancer,
        event_bus=event_bus or get_event_bus(),
    )


def configure_coordinator(coordinator: RunCoordinator) -> None:
    global _coordinator
    _coordinator = coordinator


def reset_coordinator() -> None:
    global _coordinator
    _coordinator = None


def _load_bootstrap(target: str) -> RunCoordinator:
    module_name, _, attr = target.partition(":")
    if not module_name or not attr:
        raise PluginConfigError(f"invoice_bootstrap must look like 'module:callable', got {target!r}")
    factory = getattr(importlib.import_module(module_name), attr, None)
    if factory is None or not callable(factory):
        raise PluginConfigError(f"invoice_bootstrap target {target!r} is not callable")
    coordinator = factory()
    if not isinstance(coordinator, RunCoordinator):
        raise PluginConfigError(f"invoice_bootstrap target {target!r} did not return a RunCoordinator")
    return coordinator


def get_coordinator() -> RunCoordinator:
    # Worker processes resolve collaborators lazily from settings; embedders call configure_coordinator.
    global _coordinator
    if _coordinator is None:
        target = get_settings().invoice_bootstrap
        if not target:
            raise PluginConfigError("no invoice coordinator configured; set INVOICE_BOOTSTRAP")
        _coordinator = _load_bootstrap(target)
        logger.info("invoice_coordinator_bootstrapped target=%s", target)
    return _coordinator
