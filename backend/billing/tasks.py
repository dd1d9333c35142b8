from __future__ import annotations

from datetime import date

from celery import shared_task

from .scheduler import tick_overdue, tick_recurring


def _parse_today(value: str | None) -> date | None:
    return date.fromisoformat(value) if value else None


@shared_task
def process_recurring_billing(today: str | None = None) -> dict[str, int]:
    return tick_recurring(_parse_today(today))


@shared_task
def process_overdue_invoices(today: str | None = None) -> dict[str, int]:
    return tick_overdue(_parse_today(today))
