"""In-memory implementations of the store and directory ports.

Each store guards its map with an ``asyncio.Lock`` and hands out copies, so
every ``save`` is one atomic step and callers never share mutable state with
the store.
"""

from __future__ import annotations

import asyncio
import copy
import itertools
from collections.abc import Iterable, Sequence
from dataclasses import replace
from datetime import datetime

from notification_router.types.models import (
    Notification,
    NotificationStatus,
    Page,
    Recipient,
    ScheduledJob,
    utc_now,
)

__all__ = [
    "InMemoryNotificationStore",
    "InMemoryRecipientDirectory",
    "InMemoryScheduledJobStore",
]


class InMemoryNotificationStore:
    """Notification store keyed by auto-incremented integer id."""

    def __init__(self) -> None:
        self._lock: asyncio.Lock = asyncio.Lock()
        self._items: dict[int, Notification] = {}
        self._ids: itertools.count[int] = itertools.count(1)

    async def save(self, notification: Notification) -> Notification:
        async with self._lock:
            if notification.id is None:
                notification.id = next(self._ids)
            notification.updated_at = utc_now()
            self._items[notification.id] = copy.deepcopy(notification)
            return copy.deepcopy(notification)

    async def get(self, notification_id: int) -> Notification | None:
        async with self._lock:
            stored = self._items.get(notification_id)
            return copy.deepcopy(stored) if stored is not None else None

    async def list_by_recipient(self, user_id: int, *, page: int, size: int) -> Page[Notification]:
        if page < 0 or size <= 0:
            msg = f"Invalid page request: page={page}, size={size}"
            raise ValueError(msg)
        async with self._lock:
            matching = sorted(
                (item for item in self._items.values() if item.recipient.user_id == user_id),
                key=lambda item: (item.created_at, item.id or 0),
                reverse=True,
            )
            window = matching[page * size : (page + 1) * size]
            return Page(items=[copy.deepcopy(item) for item in window], total=len(matching), page=page, size=size)

    async def find_due_retries(self, now: datetime) -> Sequence[Notification]:
        async with self._lock:
            return [
                copy.deepcopy(item)
                for item in self._items.values()
                if item.status is NotificationStatus.PENDING
                and item.next_retry_at is not None
                and item.next_retry_at <= now
            ]

    async def count(self) -> int:
        async with self._lock:
            return len(self._items)


class InMemoryScheduledJobStore:
    """Scheduled job store keyed by ``(job_key, job_group)``. Records are never deleted."""

    def __init__(self) -> None:
        self._lock: asyncio.Lock = asyncio.Lock()
        self._jobs: dict[tuple[str, str], ScheduledJob] = {}
        self._ids: itertools.count[int] = itertools.count(1)

    async def save(self, job: ScheduledJob) -> ScheduledJob:
        async with self._lock:
            stored = replace(job, job_data=dict(job.job_data), updated_at=utc_now())
            if stored.id is None:
                existing = self._jobs.get(job.identity)
                stored.id = existing.id if existing is not None else next(self._ids)
            self._jobs[stored.identity] = stored
            return replace(stored, job_data=dict(stored.job_data))

    async def get(self, job_key: str, job_group: str) -> ScheduledJob | None:
        async with self._lock:
            stored = self._jobs.get((job_key, job_group))
            return replace(stored, job_data=dict(stored.job_data)) if stored is not None else None

    async def find_active_by_notification(self, notification_id: int) -> ScheduledJob | None:
        async with self._lock:
            candidates = [
                job
                for job in self._jobs.values()
                if job.notification_id == notification_id and not job.is_completed
            ]
            if not candidates:
                return None
            latest = max(candidates, key=lambda job: job.created_at)
            return replace(latest, job_data=dict(latest.job_data))

    async def find_active(self) -> Sequence[ScheduledJob]:
        async with self._lock:
            return [replace(job, job_data=dict(job.job_data)) for job in self._jobs.values() if not job.is_completed]

    async def all_jobs(self) -> Sequence[ScheduledJob]:
        async with self._lock:
            return [replace(job, job_data=dict(job.job_data)) for job in self._jobs.values()]


class InMemoryRecipientDirectory:
    """Recipient lookup backed by a dict."""

    def __init__(self, recipients: Iterable[Recipient] = ()) -> None:
        self._recipients: dict[int, Recipient] = {recipient.user_id: recipient for recipient in recipients}

    def add(self, recipient: Recipient) -> None:
        self._recipients[recipient.user_id] = recipient

    async def get(self, user_id: int) -> Recipient | None:
        recipient = self._recipients.get(user_id)
        return replace(recipient) if recipient is not None else None

    async def get_many(self, user_ids: Sequence[int]) -> Sequence[Recipient]:
        return [replace(self._recipients[user_id]) for user_id in user_ids if user_id in self._recipients]
