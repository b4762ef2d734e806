from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field, replace
from datetime import date, datetime, time as dt_time, timezone
from enum import Enum
from typing import Callable, Sequence

from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from invoicerun.core.config import NEXT_BILLING_DATE_QUEUE
from invoicerun.core.errors import AccountBusyError, NothingToDoError, PluginRetryableError
from invoicerun.domain.events import InvoiceEvent, InvoiceEventType
from invoicerun.domain.invoices import (
    DRY_RUN_CUR_DATE_PROPERTY,
    DRY_RUN_TARGET_DATE_PROPERTY,
    GenerationRequest,
    Invoice,
    InvoiceContext,
    InvoiceDraft,
    InvoiceItem,
    PluginProperty,
    RetryState,
    RunOrigin,
)
from invoicerun.domain.models import ScheduledNotification
from invoicerun.domain.payloads import InvoiceNotificationPayload
from invoicerun.persistence.db import SessionLocal
from invoicerun.persistence.repos import invoices as invoices_repo
from invoicerun.services.invoicing.assembler import InvoiceAssembler, MergeOutcome
from invoicerun.services.invoicing.collaborators import BillingEventSource, CreditRebalancer, EventBus
from invoicerun.services.invoicing.event_bus import NullEventBus
from invoicerun.services.invoicing.grouping import split_invoice
from invoicerun.services.locks import account_lease
from invoicerun.services.notifications import queue, retry_lane
from invoicerun.services.plugins.gateway import PluginGateway
from invoicerun.services.plugins.registry import PluginRegistry
from invoicerun.services.telemetry import increment_counter, record_run


logger = logging.getLogger(__name__)


class RunState(str, Enum):
    IDLE = "IDLE"
    PRIOR_CALL = "PRIOR_CALL"
    ABORTED = "ABORTED"
    RESCHEDULED = "RESCHEDULED"
    ITEM_COMPUTATION = "ITEM_COMPUTATION"
    GROUPING = "GROUPING"
    PERSISTED = "PERSISTED"
    NOTHING_TO_DO = "NOTHING_TO_DO"
    STALE = "STALE"
    FAILED = "FAILED"


@dataclass(slots=True)
class RunResult:
    state: RunState
    request: GenerationRequest
    invoices: list[Invoice] = field(default_factory=list)
    updated_items: list[InvoiceItem] = field(default_factory=list)
    reschedule_at: datetime | None = None
    # False when a reschedule collided with an already scheduled notification.
    reschedule_applied: bool = False
    retry: RetryState | None = None
    next_billing_at: datetime | None = None
    error: BaseException | None = None

    @property
    def is_fatal(self) -> bool:
        return self.state is RunState.FAILED and self.retry is None


@dataclass(slots=True)
class _LoadedRun:
    prior_invoices: list[Invoice]
    context: InvoiceContext


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _error_text(exc: BaseException) -> str:
    return f"{type(exc).__name__}: {exc}"


def billing_instant(target_date: date) -> datetime:
    # Next-billing-date notifications fire at midnight UTC of the billing day.
    return datetime.combine(target_date, dt_time.min, tzinfo=timezone.utc)


class RunCoordinator:
    """Drives one invoice run per call through the plugin lifecycle.

    Each run holds the account lease from PRIOR_CALL to its terminal state. Reads happen
    first, plugin calls run outside any database transaction, and every terminal state
    commits its notification bookkeeping together with its invoice writes.
    """

    def __init__(
        self,
        billing_source: BillingEventSource,
        *,
        registry: PluginRegistry | None = None,
        rebalancer: CreditRebalancer | None = None,
        event_bus: EventBus | None = None,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._billing_source = billing_source
        self._registry = registry or PluginRegistry()
        self._assembler = InvoiceAssembler(billing_source, rebalancer=rebalancer)
        self._event_bus = event_bus or NullEventBus()
        self._session_factory = session_factory or SessionLocal
        self._clock = clock or _utc_now

    @property
    def registry(self) -> PluginRegistry:
        return self._registry

    @property
    def session_factory(self) -> async_sessionmaker[AsyncSession]:
        return self._session_factory

    def now(self) -> datetime:
        return self._clock()

    def _transition(self, request: GenerationRequest, state: RunState, **fields) -> None:
        extra = " ".join(f"{key}={value}" for key, value in fields.items())
        logger.info(
            "invoice_run_state account_id=%s target_date=%s origin=%s retry_count=%s state=%s %s",
            request.account_id,
            request.target_date.isoformat(),
            request.origin.value,
            request.retry_count,
            state.value,
            extra,
        )

    async def process_notification(self, notification_id: str) -> RunResult | None:
        """Run the generation requested by a claimed notification.

        Returns None when the row is gone, or when the account lease is busy and the row was
        handed back to the poller.
        """
        async with self._session_factory() as session:
            row = await session.get(ScheduledNotification, notification_id)
            if row is None or row.status == queue.STATUS_DLQ:
                return None
            try:
                payload = InvoiceNotificationPayload.model_validate(row.payload_json)
            except ValidationError as exc:
                await queue.dead_letter(session, row, error=_error_text(exc))
                await session.commit()
                increment_counter("invoice_notification_invalid_total")
                return None
        request = payload.to_request(notification_id=notification_id)
        try:
            return await self.run(request)
        except AccountBusyError as exc:
            async with self._session_factory() as session:
                await queue.release_claim(session, notification_id, error=_error_text(exc))
                await session.commit()
            return None

    async def run(self, request: GenerationRequest) -> RunResult:
        start = time.monotonic()
        async with account_lease(request.account_id):
            result = await self._run_locked(request)
        record_run(outcome=result.state.value.lower(), duration_ms=(time.monotonic() - start) * 1000.0)
        return result

    async def _run_locked(self, request: GenerationRequest) -> RunResult:
        gateway = self._registry.gateway()
        self._transition(request, RunState.PRIOR_CALL, plugins=",".join(gateway.plugin_names) or "none")
        async with self._session_factory() as session:
            loaded = await self._load(session, request)
            if loaded is None:
                return await self._stale(session, request)
            context = loaded.context

            try:
                prior = await gateway.prior_call(context, request.properties)
            except Exception as exc:  # noqa: BLE001 - any prior_call failure is fatal for the run
                return await self._fail(session, request, gateway, context, exc)
            if prior.is_aborted:
                return await self._abort(session, request)
            if prior.reschedule_at is not None:
                return await self._reschedule(session, request, prior.reschedule_at)

            self._transition(request, RunState.ITEM_COMPUTATION)
            try:
                draft, outcome = await self._compute_items(gateway, request, loaded.prior_invoices, is_dry_run=False)
            except PluginRetryableError as exc:
                return await self._retry(session, request, gateway, context, exc)
            except Exception as exc:  # noqa: BLE001 - non-retryable item failures are fatal
                return await self._fail(session, request, gateway, context, exc)

            try:
                next_billing_at = await self._next_billing_at(request)
                if not draft.items and not outcome.touches_prior_invoices:
                    return await self._nothing_to_do(session, request, next_billing_at)
                self._transition(request, RunState.GROUPING, items=len(draft.items))
                grouping = (
                    await gateway.get_grouping(draft, False, request.properties) if draft.items else None
                )
                drafts = split_invoice(draft, grouping) if draft.items else []
                result = await self._persist(session, request, drafts, outcome, next_billing_at)
            except Exception as exc:  # noqa: BLE001 - rollback happens in _fail
                return await self._fail(session, request, gateway, context, exc)

        await self._after_success(gateway, request, context, result, outcome)
        return result

    async def _load(self, session: AsyncSession, request: GenerationRequest) -> _LoadedRun | None:
        # Read phase; the transaction ends before any plugin call.
        if request.notification_id is not None:
            row = await queue.load_for_processing(session, request.notification_id)
            if row is None:
                await session.rollback()
                return None
        if request.is_queue_driven:
            run_state = await invoices_repo.get_run_state(session, request.account_id)
            if run_state is not None and request.target_date < run_state.last_target_date:
                await session.rollback()
                return None
        prior_invoices = await invoices_repo.load_prior_invoices(session, request.account_id)
        await session.commit()
        context = InvoiceContext(
            account_id=request.account_id,
            tenant_id=request.tenant_id,
            target_date=request.target_date,
            is_dry_run=request.is_dry_run,
            is_rescheduled=request.is_rescheduled,
            retry_count=request.retry_count,
            existing_invoices=tuple(prior_invoices),
        )
        return _LoadedRun(prior_invoices=prior_invoices, context=context)

    async def _compute_items(
        self,
        gateway: PluginGateway,
        request: GenerationRequest,
        prior_invoices: Sequence[Invoice],
        *,
        is_dry_run: bool,
        properties: Sequence[PluginProperty] | None = None,
    ) -> tuple[InvoiceDraft, MergeOutcome]:
        properties = request.properties if properties is None else properties
        draft = await self._assembler.build_draft(request, prior_invoices)
        plugin_items = await gateway.get_additional_items(draft, is_dry_run, properties)
        outcome = self._assembler.merge_plugin_items(draft, plugin_items, prior_invoices)
        await self._assembler.rebalance_credits(draft, outcome, prior_invoices)
        self._assembler.finalize(draft, outcome, prior_invoices)
        return draft, outcome

    async def _next_billing_at(self, request: GenerationRequest) -> datetime | None:
        next_date = await self._billing_source.next_billing_date(request.account_id, request.target_date)
        if next_date is None or next_date <= request.target_date:
            return None
        return billing_instant(next_date)

    async def _consume_firing(self, session: AsyncSession, request: GenerationRequest) -> bool:
        if request.notification_id is None:
            return True
        return await queue.consume(session, request.notification_id)

    async def _schedule_next(
        self, session: AsyncSession, request: GenerationRequest, next_billing_at: datetime | None
    ) -> None:
        if next_billing_at is None:
            return
        payload = InvoiceNotificationPayload(
            account_id=request.account_id,
            tenant_id=request.tenant_id,
            target_date=next_billing_at.date(),
            origin=RunOrigin.NEXT_BILLING_DATE,
        )
        await queue.insert_if_absent(
            session,
            queue_name=NEXT_BILLING_DATE_QUEUE,
            payload=payload,
            effective_at=next_billing_at,
        )

    async def _stale(self, session: AsyncSession, request: GenerationRequest) -> RunResult:
        # Older cycle redelivered after a newer one completed, or already consumed elsewhere.
        if request.notification_id is not None:
            await queue.consume(session, request.notification_id)
            await session.commit()
        increment_counter("invoice_runs_stale_total")
        self._transition(request, RunState.STALE)
        return RunResult(state=RunState.STALE, request=request)

    async def _abort(self, session: AsyncSession, request: GenerationRequest) -> RunResult:
        # No replacement notification: the account waits for its next external trigger.
        await self._consume_firing(session, request)
        await session.commit()
        self._transition(request, RunState.ABORTED)
        return RunResult(state=RunState.ABORTED, request=request)

    async def _reschedule(self, session: AsyncSession, request: GenerationRequest, reschedule_at: datetime) -> RunResult:
        if reschedule_at.tzinfo is None:
            reschedule_at = reschedule_at.replace(tzinfo=timezone.utc)
        await self._consume_firing(session, request)
        payload = InvoiceNotificationPayload.from_request(
            request,
            origin=RunOrigin.NEXT_BILLING_DATE,
            is_rescheduled=True,
            retry_count=request.retry_count,
        )
        row = await queue.insert_if_absent(
            session,
            queue_name=NEXT_BILLING_DATE_QUEUE,
            payload=payload,
            effective_at=reschedule_at,
        )
        await session.commit()
        self._transition(
            request,
            RunState.RESCHEDULED,
            reschedule_at=reschedule_at.isoformat(),
            applied=row is not None,
        )
        return RunResult(
            state=RunState.RESCHEDULED,
            request=request,
            reschedule_at=reschedule_at,
            reschedule_applied=row is not None,
        )

    async def _retry(
        self,
        session: AsyncSession,
        request: GenerationRequest,
        gateway: PluginGateway,
        context: InvoiceContext,
        exc: PluginRetryableError,
    ) -> RunResult:
        if retry_lane.retry_budget_exhausted(request.retry_count + 1):
            increment_counter("invoice_retry_budget_exhausted_total")
            return await self._fail(session, request, gateway, context, exc)
        await session.rollback()
        await self._consume_firing(session, request)
        retry = await retry_lane.schedule_retry(session, request, error=_error_text(exc), now=self._clock())
        await session.commit()
        self._transition(
            request,
            RunState.FAILED,
            retryable=True,
            next_attempt_at=retry.next_attempt_at.isoformat(),
        )
        return RunResult(state=RunState.FAILED, request=request, retry=retry, error=exc)

    async def _fail(
        self,
        session: AsyncSession,
        request: GenerationRequest,
        gateway: PluginGateway,
        context: InvoiceContext,
        exc: BaseException,
    ) -> RunResult:
        await session.rollback()
        error = _error_text(exc)
        if request.notification_id is not None:
            row = await queue.load_for_processing(session, request.notification_id)
            if row is not None:
                await queue.dead_letter(session, row, error=error)
            await session.commit()
        increment_counter("invoice_runs_fatal_total")
        logger.error(
            "invoice_run_failed account_id=%s target_date=%s origin=%s error=%s",
            request.account_id,
            request.target_date.isoformat(),
            request.origin.value,
            error,
            exc_info=exc,
        )
        self._transition(request, RunState.FAILED, retryable=False)
        await gateway.on_failure_call(replace(context, error=error), request.properties)
        return RunResult(state=RunState.FAILED, request=request, error=exc)

    async def _nothing_to_do(
        self, session: AsyncSession, request: GenerationRequest, next_billing_at: datetime | None
    ) -> RunResult:
        await self._consume_firing(session, request)
        await retry_lane.clear_retry(session, request.account_id)
        await self._schedule_next(session, request, next_billing_at)
        await invoices_repo.record_run_state(
            session,
            account_id=request.account_id,
            tenant_id=request.tenant_id,
            target_date=request.target_date,
            outcome=RunState.NOTHING_TO_DO.value,
        )
        await session.commit()
        self._transition(request, RunState.NOTHING_TO_DO)
        await self._publish(
            "invoice.null",
            request,
            {"target_date": request.target_date.isoformat()},
        )
        return RunResult(state=RunState.NOTHING_TO_DO, request=request, next_billing_at=next_billing_at)

    async def _persist(
        self,
        session: AsyncSession,
        request: GenerationRequest,
        drafts: Sequence[InvoiceDraft],
        outcome: MergeOutcome,
        next_billing_at: datetime | None,
    ) -> RunResult:
        # One transaction: invoices, in-place updates, notification bookkeeping, run state.
        if not await self._consume_firing(session, request):
            await session.rollback()
            return await self._stale(session, request)
        invoices = [await invoices_repo.save_invoice(session, draft) for draft in drafts]
        updated = [await invoices_repo.update_persisted_item(session, item) for item in outcome.updated_items]
        for invoice_id, items in outcome.prior_additions.items():
            await invoices_repo.append_items(session, invoice_id, items)
        await retry_lane.clear_retry(session, request.account_id)
        await self._schedule_next(session, request, next_billing_at)
        await invoices_repo.record_run_state(
            session,
            account_id=request.account_id,
            tenant_id=request.tenant_id,
            target_date=request.target_date,
            outcome=RunState.PERSISTED.value,
        )
        await session.commit()
        self._transition(
            request,
            RunState.PERSISTED,
            invoices=len(invoices),
            updated_items=len(updated),
        )
        return RunResult(
            state=RunState.PERSISTED,
            request=request,
            invoices=invoices,
            updated_items=updated,
            next_billing_at=next_billing_at,
        )

    async def _after_success(
        self,
        gateway: PluginGateway,
        request: GenerationRequest,
        context: InvoiceContext,
        result: RunResult,
        outcome: MergeOutcome,
    ) -> None:
        if result.state is not RunState.PERSISTED:
            return
        for invoice in result.invoices:
            await gateway.on_success_call(replace(context, invoice=invoice), request.properties)
        new_ids = set()
        for invoice in result.invoices:
            new_ids.add(invoice.id)
            data = {
                "invoice_id": invoice.id,
                "target_date": invoice.target_date.isoformat(),
                "currency": invoice.currency,
                "amount": str(invoice.amount),
                "balance": str(invoice.balance),
                "item_count": len(invoice.items),
            }
            await self._publish("invoice.created", request, data)
            if invoice.id in outcome.adjusted_invoice_ids:
                await self._publish("invoice.adjustment", request, data)
            if invoice.balance > 0:
                await self._publish("invoice.payment_requested", request, data)
        for invoice_id in sorted(outcome.adjusted_invoice_ids - new_ids):
            await self._publish("invoice.adjustment", request, {"invoice_id": invoice_id})

    async def _publish(self, event_type: InvoiceEventType, request: GenerationRequest, data: dict) -> None:
        event: InvoiceEvent = {
            "type": event_type,
            "account_id": request.account_id,
            "tenant_id": request.tenant_id,
            "data": data,
        }
        try:
            await self._event_bus.publish(event)
        except Exception as exc:  # noqa: BLE001 - bus delivery is fire-and-forget
            increment_counter("invoice_event_publish_failures_total")
            logger.warning("invoice_event_publish_failed type=%s account_id=%s", event_type, request.account_id, exc_info=exc)

    async def dry_run(self, request: GenerationRequest) -> Invoice:
        """Compute an invoice preview without persisting or touching notifications.

        Plugins see the dry-run flag plus two synthetic properties carrying the current and
        target dates. Aborts and empty previews raise ``NothingToDoError``; reschedules are
        ignored.
        """
        gateway = self._registry.gateway()
        properties = tuple(request.properties) + (
            PluginProperty(DRY_RUN_CUR_DATE_PROPERTY, self._clock().date().isoformat()),
            PluginProperty(DRY_RUN_TARGET_DATE_PROPERTY, request.target_date.isoformat()),
        )
        async with self._session_factory() as session:
            prior_invoices = await invoices_repo.load_prior_invoices(session, request.account_id)
        context = InvoiceContext(
            account_id=request.account_id,
            tenant_id=request.tenant_id,
            target_date=request.target_date,
            is_dry_run=True,
            is_rescheduled=False,
            retry_count=0,
            existing_invoices=tuple(prior_invoices),
        )
        prior = await gateway.prior_call(context, properties)
        if prior.is_aborted:
            raise NothingToDoError(f"dry run for account {request.account_id} was aborted", reason="aborted")
        draft, _ = await self._compute_items(gateway, request, prior_invoices, is_dry_run=True, properties=properties)
        if not draft.items:
            raise NothingToDoError(f"nothing to invoice for account {request.account_id}", reason="no_items")
        increment_counter("invoice_dry_runs_total")
        return Invoice(
            id=draft.id,
            account_id=draft.account_id,
            tenant_id=draft.tenant_id,
            target_date=draft.target_date,
            currency=draft.currency,
            items=tuple(draft.items),
            created_at=self._clock(),
            is_dry_run=True,
        )
