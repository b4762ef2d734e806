from __future__ import annotations

from invoicerun.core.config import Settings
from invoicerun.services.notifications.queue import dedupe_window_start
from invoicerun.services.notifications.retry_lane import retry_backoff_s, retry_budget_exhausted
from invoicerun.tests.utils.fakes import utc


def test_fixed_backoff_by_default() -> None:
    settings = Settings(invoice_retry_backoff_s=300, invoice_retry_backoff_multiplier=1.0)
    assert [retry_backoff_s(count, settings) for count in (1, 2, 5)] == [300.0, 300.0, 300.0]


def test_geometric_backoff_is_capped() -> None:
    settings = Settings(
        invoice_retry_backoff_s=300,
        invoice_retry_backoff_multiplier=2.0,
        invoice_retry_backoff_max_s=1000,
    )
    assert [retry_backoff_s(count, settings) for count in (1, 2, 3, 4)] == [300.0, 600.0, 1000.0, 1000.0]


def test_zero_backoff_is_clamped_to_one_second() -> None:
    assert retry_backoff_s(1, Settings(invoice_retry_backoff_s=0)) == 1.0


def test_retry_budget() -> None:
    unlimited = Settings(invoice_retry_max_attempts=0)
    assert retry_budget_exhausted(1000, unlimited) is False
    bounded = Settings(invoice_retry_max_attempts=3)
    assert retry_budget_exhausted(3, bounded) is False
    assert retry_budget_exhausted(4, bounded) is True


def test_dedupe_window_start_buckets_by_window() -> None:
    assert dedupe_window_start(effective_at=utc(2012, 5, 1, 17, 30), window_seconds=86400) == utc(2012, 5, 1)
    assert dedupe_window_start(effective_at=utc(2012, 5, 1, 17, 30), window_seconds=3600) == utc(2012, 5, 1, 17)
    assert dedupe_window_start(effective_at=utc(2012, 5, 1, 0, 0), window_seconds=0) == utc(2012, 5, 1)
