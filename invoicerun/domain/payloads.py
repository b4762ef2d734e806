from __future__ import annotations

from datetime import date

from pydantic import BaseModel, Field

from invoicerun.domain.invoices import GenerationRequest, PluginProperty, RunOrigin


class PluginPropertyPayload(BaseModel):
    key: str
    value: str | None = None
    is_updatable: bool = False


class InvoiceNotificationPayload(BaseModel):
    # Durable payload stored on scheduled notifications; validated again when the poller consumes it.
    account_id: str
    tenant_id: str
    target_date: date
    origin: RunOrigin = RunOrigin.NEXT_BILLING_DATE
    is_rescheduled: bool = False
    retry_count: int = Field(default=0, ge=0)
    properties: list[PluginPropertyPayload] = Field(default_factory=list)
    last_error: str | None = None

    @classmethod
    def from_request(
        cls,
        request: GenerationRequest,
        *,
        origin: RunOrigin,
        is_rescheduled: bool = False,
        retry_count: int = 0,
        last_error: str | None = None,
    ) -> InvoiceNotificationPayload:
        return cls(
            account_id=request.account_id,
            tenant_id=request.tenant_id,
            target_date=request.target_date,
            origin=origin,
            is_rescheduled=is_rescheduled,
            retry_count=retry_count,
            properties=[
                PluginPropertyPayload(key=prop.key, value=prop.value, is_updatable=prop.is_updatable)
                for prop in request.properties
            ],
            last_error=last_error,
        )

    def to_request(self, *, notification_id: str | None = None) -> GenerationRequest:
        return GenerationRequest(
            account_id=self.account_id,
            tenant_id=self.tenant_id,
            target_date=self.target_date,
            properties=tuple(
                PluginProperty(key=prop.key, value=prop.value, is_updatable=prop.is_updatable)
                for prop in self.properties
            ),
            origin=self.origin,
            is_rescheduled=self.is_rescheduled,
            retry_count=self.retry_count,
            notification_id=notification_id,
        )
