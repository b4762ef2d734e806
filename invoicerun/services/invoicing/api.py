from __future__ import annotations

import logging
from datetime import date
from typing import Sequence

from invoicerun.core.config import NEXT_BILLING_DATE_QUEUE
from invoicerun.core.errors import NothingToDoError, RetryScheduledError
from invoicerun.domain.invoices import (
    DryRunArguments,
    DryRunType,
    GenerationRequest,
    Invoice,
    PluginProperty,
    RunOrigin,
)
from invoicerun.domain.payloads import InvoiceNotificationPayload
from invoicerun.persistence.repos import invoices as invoices_repo
from invoicerun.services.invoicing.coordinator import RunCoordinator, RunState, billing_instant
from invoicerun.services.notifications import queue


logger = logging.getLogger(__name__)


class InvoiceUserApi:
    """Synchronous entry points for collaborators (subscription events, operators, previews)."""

    def __init__(self, coordinator: RunCoordinator) -> None:
        self._coordinator = coordinator

    async def trigger_generation(
        self,
        account_id: str,
        tenant_id: str,
        target_date: date,
        properties: Sequence[PluginProperty] = (),
    ) -> Invoice:
        """Run generation now and return the (first) invoice produced.

        Raises ``NothingToDoError`` when the plugin aborts or reschedules the run or when
        there is nothing to invoice, ``RetryScheduledError`` when a retryable plugin failure
        queued a retry, and re-raises the original exception on fatal failures.
        """
        request = GenerationRequest(
            account_id=account_id,
            tenant_id=tenant_id,
            target_date=target_date,
            properties=tuple(properties),
            origin=RunOrigin.MANUAL,
        )
        result = await self._coordinator.run(request)
        if result.state is RunState.PERSISTED and result.invoices:
            return result.invoices[0]
        if result.is_fatal:
            raise result.error
        if result.retry is not None:
            raise RetryScheduledError(
                f"invoice run for account {account_id} failed; retry queued",
                next_attempt_at=result.retry.next_attempt_at,
                retry_count=result.retry.retry_count,
            ) from result.error
        reason = {
            RunState.ABORTED: "aborted",
            RunState.RESCHEDULED: "rescheduled",
            RunState.NOTHING_TO_DO: "no_items",
            RunState.PERSISTED: "no_new_invoice",
            RunState.STALE: "stale",
        }.get(result.state, result.state.value.lower())
        raise NothingToDoError(f"nothing to invoice for account {account_id} ({reason})", reason=reason)

    async def trigger_dry_run(
        self,
        account_id: str,
        tenant_id: str,
        target_date: date | None,
        dry_run_arguments: DryRunArguments | None = None,
        properties: Sequence[PluginProperty] = (),
    ) -> Invoice:
        dry_run_arguments = dry_run_arguments or DryRunArguments()
        if dry_run_arguments.dry_run_type is DryRunType.UPCOMING_INVOICE:
            target_date = await self._upcoming_target_date(account_id)
        if target_date is None:
            raise NothingToDoError(f"no target date for account {account_id} dry run", reason="no_target_date")
        request = GenerationRequest(
            account_id=account_id,
            tenant_id=tenant_id,
            target_date=target_date,
            properties=tuple(properties),
            origin=RunOrigin.DRY_RUN,
            is_dry_run=True,
            dry_run_arguments=dry_run_arguments,
        )
        return await self._coordinator.dry_run(request)

    async def _upcoming_target_date(self, account_id: str) -> date:
        async with self._coordinator.session_factory() as session:
            row = await queue.next_pending(session, queue_name=NEXT_BILLING_DATE_QUEUE, account_id=account_id)
        if row is None:
            raise NothingToDoError(f"no upcoming invoice for account {account_id}", reason="no_upcoming_invoice")
        return InvoiceNotificationPayload.model_validate(row.payload_json).target_date

    async def schedule_next_billing_date(self, account_id: str, tenant_id: str, target_date: date) -> bool:
        # Entry point for subscription events; a notification already in the window wins.
        payload = InvoiceNotificationPayload(
            account_id=account_id,
            tenant_id=tenant_id,
            target_date=target_date,
            origin=RunOrigin.NEXT_BILLING_DATE,
        )
        async with self._coordinator.session_factory() as session:
            row = await queue.insert_if_absent(
                session,
                queue_name=NEXT_BILLING_DATE_QUEUE,
                payload=payload,
                effective_at=billing_instant(target_date),
            )
            await session.commit()
        return row is not None

    async def get_invoices(self, account_id: str) -> list[Invoice]:
        async with self._coordinator.session_factory() as session:
            return await invoices_repo.load_prior_invoices(session, account_id)
