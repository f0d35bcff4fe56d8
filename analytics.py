"""
Month-over-month task analytics for a project.

All counts are scoped to one project and bucketed by task created_at into the
calendar month of `now` and the month before it. Both window bounds are
inclusive. Metrics overlap freely: one task can be assigned, incomplete and
overdue at the same time.

Overdue is evaluated against `now` for the current month but against the end
of the previous month for the previous month, so that last month's figure
reflects what was overdue when that month closed.
"""

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from authz import RequestContext, authorize_project
from database import TASKS
from logging_config import get_logger
from schemas import DONE, AnalyticsReport

logger = get_logger(__name__)

# store timestamps have millisecond precision
END_OF_MONTH_PRECISION = timedelta(milliseconds=1)


@dataclass(frozen=True)
class MonthWindows:
    this_month_start: datetime
    this_month_end: datetime
    last_month_start: datetime
    last_month_end: datetime


def start_of_month(dt: datetime) -> datetime:
    return dt.replace(day=1, hour=0, minute=0, second=0, microsecond=0)


def end_of_month(dt: datetime) -> datetime:
    start = start_of_month(dt)
    if start.month == 12:
        next_start = start.replace(year=start.year + 1, month=1)
    else:
        next_start = start.replace(month=start.month + 1)
    return next_start - END_OF_MONTH_PRECISION


def month_windows(now: datetime) -> MonthWindows:
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    now = now.astimezone(timezone.utc)
    this_start = start_of_month(now)
    last_start = start_of_month(this_start - timedelta(days=1))
    return MonthWindows(
        this_month_start=this_start,
        this_month_end=end_of_month(now),
        last_month_start=last_start,
        last_month_end=end_of_month(last_start),
    )


def _created_between(project_id: str, start: datetime, end: datetime, **extra) -> dict:
    return {"project_id": project_id, "created_at": {"$gte": start, "$lte": end}, **extra}


def metric_filters(project_id: str, member_id: str, windows: MonthWindows, now: datetime) -> dict[str, tuple[dict, dict]]:
    """(this month, last month) filter pair for every metric."""

    def pair(this_extra: dict, last_extra: Optional[dict] = None) -> tuple[dict, dict]:
        last_extra = this_extra if last_extra is None else last_extra
        return (
            _created_between(project_id, windows.this_month_start, windows.this_month_end, **this_extra),
            _created_between(project_id, windows.last_month_start, windows.last_month_end, **last_extra),
        )

    return {
        "task": pair({}),
        "assigned_task": pair({"assignee_id": member_id}),
        "incomplete_task": pair({"status": {"$ne": DONE}}),
        "completed_task": pair({"status": DONE}),
        "overdue_task": pair(
            {"status": {"$ne": DONE}, "due_date": {"$lt": now}},
            {"status": {"$ne": DONE}, "due_date": {"$lt": windows.last_month_end}},
        ),
    }


async def count_metrics(ctx: RequestContext, project_id: str, member_id: str, now: datetime) -> AnalyticsReport:
    """Issue every count concurrently and assemble the report once all have returned."""
    windows = month_windows(now)
    filters = metric_filters(project_id, member_id, windows, now)

    queries = []
    for this_filter, last_filter in filters.values():
        queries.append(ctx.store.count_documents(TASKS, this_filter))
        queries.append(ctx.store.count_documents(TASKS, last_filter))
    counts = await asyncio.gather(*queries)

    report = {}
    for i, name in enumerate(filters):
        this_count, last_count = counts[2 * i], counts[2 * i + 1]
        report[f"{name}_count"] = this_count
        report[f"{name}_difference"] = this_count - last_count
    return AnalyticsReport(**report)


async def compute_project_analytics(ctx: RequestContext, project_id: str, now: Optional[datetime] = None) -> AnalyticsReport:
    project, member = await authorize_project(ctx, project_id)
    now = now or datetime.now(timezone.utc)
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    report = await count_metrics(ctx, project["id"], member["id"], now)
    logger.debug("project_analytics", project_id=project["id"], member_id=member["id"], **report.model_dump())
    return report
