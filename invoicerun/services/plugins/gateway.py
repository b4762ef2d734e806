from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Mapping
from typing import Any, Awaitable, Protocol, Sequence

from invoicerun.core.errors import PluginContractError, PluginRetryableError
from invoicerun.domain.invoices import (
    GroupingResult,
    InvoiceContext,
    InvoiceDraft,
    InvoiceItem,
    PluginProperty,
    PriorCallResult,
)
from invoicerun.services.plugins.base import InvoicePluginApi
from invoicerun.services.telemetry import increment_counter, record_external_call


logger = logging.getLogger(__name__)


class PluginGateway(Protocol):
    @property
    def plugin_names(self) -> tuple[str, ...]:
        ...

    async def prior_call(self, context: InvoiceContext, properties: Sequence[PluginProperty]) -> PriorCallResult:
        ...

    async def get_additional_items(
        self, draft: InvoiceDraft, is_dry_run: bool, properties: Sequence[PluginProperty]
    ) -> list[InvoiceItem]:
        ...

    async def get_grouping(
        self, draft: InvoiceDraft, is_dry_run: bool, properties: Sequence[PluginProperty]
    ) -> GroupingResult | None:
        ...

    async def on_success_call(self, context: InvoiceContext, properties: Sequence[PluginProperty]) -> None:
        ...

    async def on_failure_call(self, context: InvoiceContext, properties: Sequence[PluginProperty]) -> None:
        ...


class NoopPluginGateway:
    """Gateway used when no plugin is registered: items pass through unmodified."""

    @property
    def plugin_names(self) -> tuple[str, ...]:
        return ()

    async def prior_call(self, context: InvoiceContext, properties: Sequence[PluginProperty]) -> PriorCallResult:
        return PriorCallResult()

    async def get_additional_items(
        self, draft: InvoiceDraft, is_dry_run: bool, properties: Sequence[PluginProperty]
    ) -> list[InvoiceItem]:
        return []

    async def get_grouping(
        self, draft: InvoiceDraft, is_dry_run: bool, properties: Sequence[PluginProperty]
    ) -> GroupingResult | None:
        return None

    async def on_success_call(self, context: InvoiceContext, properties: Sequence[PluginProperty]) -> None:
        return None

    async def on_failure_call(self, context: InvoiceContext, properties: Sequence[PluginProperty]) -> None:
        return None


class SinglePluginGateway:
    def __init__(self, name: str, plugin: InvoicePluginApi, *, timeout_ms: int) -> None:
        self._name = name
        self._plugin = plugin
        self._timeout_s = max(1, int(timeout_ms)) / 1000.0

    @property
    def name(self) -> str:
        return self._name

    @property
    def plugin_names(self) -> tuple[str, ...]:
        return (self._name,)

    async def _call(self, step: str, call: Awaitable[Any]) -> Any:
        # Every plugin call is bounded; hung plugins must not pin the account lease.
        start = time.monotonic()
        success = False
        try:
            result = await asyncio.wait_for(call, timeout=self._timeout_s)
            success = True
            return result
        except asyncio.TimeoutError:
            increment_counter(f"plugin_timeouts_total.{self._name}.{step}")
            logger.warning("plugin_call_timeout plugin=%s step=%s timeout_s=%s", self._name, step, self._timeout_s)
            raise
        finally:
            record_external_call(
                integration=f"plugin.{self._name}.{step}",
                latency_ms=(time.monotonic() - start) * 1000.0,
                success=success,
            )

    async def prior_call(self, context: InvoiceContext, properties: Sequence[PluginProperty]) -> PriorCallResult:
        result = await self._call("prior_call", self._plugin.prior_call(context, properties))
        if result is None:
            return PriorCallResult()
        if not isinstance(result, PriorCallResult):
            raise PluginContractError(f"plugin {self._name} prior_call returned {type(result).__name__}")
        return result

    async def get_additional_items(
        self, draft: InvoiceDraft, is_dry_run: bool, properties: Sequence[PluginProperty]
    ) -> list[InvoiceItem]:
        try:
            items = await self._call(
                "get_additional_items",
                self._plugin.get_additional_items(draft, is_dry_run, properties),
            )
        except asyncio.TimeoutError as exc:
            # Item computation is the only retryable step; a hang there is treated as transient.
            raise PluginRetryableError(f"plugin {self._name} timed out computing items") from exc
        if items is None:
            return []
        if not isinstance(items, (list, tuple)):
            raise PluginContractError(f"plugin {self._name} returned {type(items).__name__} instead of items")
        for item in items:
            if not isinstance(item, InvoiceItem):
                raise PluginContractError(f"plugin {self._name} returned a non-item entry {type(item).__name__}")
            if item.account_id != draft.account_id:
                raise PluginContractError(
                    f"plugin {self._name} item {item.id} belongs to account {item.account_id}, not {draft.account_id}"
                )
            if item.currency != draft.currency:
                raise PluginContractError(
                    f"plugin {self._name} item {item.id} currency {item.currency} does not match {draft.currency}"
                )
        return list(items)

    async def get_grouping(
        self, draft: InvoiceDraft, is_dry_run: bool, properties: Sequence[PluginProperty]
    ) -> GroupingResult | None:
        result = await self._call("get_grouping", self._plugin.get_grouping(draft, is_dry_run, properties))
        if result is None or isinstance(result, GroupingResult):
            return result
        if isinstance(result, Mapping):
            return GroupingResult.from_groups(result)
        logger.warning("plugin_grouping_ignored plugin=%s type=%s", self._name, type(result).__name__)
        return None

    async def on_success_call(self, context: InvoiceContext, properties: Sequence[PluginProperty]) -> None:
        await self._advisory("on_success_call", self._plugin.on_success_call(context, properties), context)

    async def on_failure_call(self, context: InvoiceContext, properties: Sequence[PluginProperty]) -> None:
        await self._advisory("on_failure_call", self._plugin.on_failure_call(context, properties), context)

    async def _advisory(self, step: str, call: Awaitable[Any], context: InvoiceContext) -> None:
        # Notification hooks cannot change the run outcome; failures are logged and counted only.
        try:
            await self._call(step, call)
        except Exception as exc:  # noqa: BLE001 - advisory callbacks never fail the run
            increment_counter(f"plugin_callback_failures_total.{self._name}.{step}")
            logger.warning(
                "plugin_callback_failed plugin=%s step=%s account_id=%s",
                self._name,
                step,
                context.account_id,
                exc_info=exc,
            )


class PluginChainGateway:
    """Several plugins called in registration order.

    Prior calls stop at the first abort and the latest non-null reschedule wins;
    additional items concatenate; the first non-null grouping wins; success and
    failure callbacks fan out to every plugin.
    """

    def __init__(self, gateways: Sequence[SinglePluginGateway]) -> None:
        self._gateways = tuple(gateways)

    @property
    def plugin_names(self) -> tuple[str, ...]:
        return tuple(gateway.name for gateway in self._gateways)

    async def prior_call(self, context: InvoiceContext, properties: Sequence[PluginProperty]) -> PriorCallResult:
        reschedule_at = None
        for gateway in self._gateways:
            result = await gateway.prior_call(context, properties)
            if result.is_aborted:
                logger.info("plugin_chain_aborted plugin=%s account_id=%s", gateway.name, context.account_id)
                return PriorCallResult(is_aborted=True)
            if result.reschedule_at is not None:
                reschedule_at = result.reschedule_at
        return PriorCallResult(reschedule_at=reschedule_at)

    async def get_additional_items(
        self, draft: InvoiceDraft, is_dry_run: bool, properties: Sequence[PluginProperty]
    ) -> list[InvoiceItem]:
        items: list[InvoiceItem] = []
        for gateway in self._gateways:
            items.extend(await gateway.get_additional_items(draft, is_dry_run, properties))
        return items

    async def get_grouping(
        self, draft: InvoiceDraft, is_dry_run: bool, properties: Sequence[PluginProperty]
    ) -> GroupingResult | None:
        for gateway in self._gateways:
            grouping = await gateway.get_grouping(draft, is_dry_run, properties)
            if grouping is not None:
                return grouping
        return None

    async def on_success_call(self, context: InvoiceContext, properties: Sequence[PluginProperty]) -> None:
        for gateway in self._gateways:
            await gateway.on_success_call(context, properties)

    async def on_failure_call(self, context: InvoiceContext, properties: Sequence[PluginProperty]) -> None:
        for gateway in self._gateways:
            await gateway.on_failure_call(context, properties)
