"""
Notification storage and retrieval.

Background work (renewal sweep, fleet sync) reports its outcome here
since nobody is listening on a websocket when it runs.
"""

import logging
from typing import Any

from core.database import deserialize_json, get_database, serialize_json
from models.notification import Notification, NotificationListResponse, NotificationType

logger = logging.getLogger(__name__)


class NotificationStore:
    """Persistent storage of operator notifications."""

    def __init__(self):
        self.db = get_database()

    async def push(
        self,
        type: NotificationType,
        title: str,
        content: str = "",
        details: dict[str, Any] | None = None,
    ) -> Notification:
        """
        Record a new notification.

        Args:
            type: error, warning, info or success
            title: Short headline
            content: Message template
            details: Structured arguments for the template

        Returns:
            The stored Notification
        """
        notification = Notification(type=type, title=title, content=content, details=details)
        notification.id = await self.db.insert(
            "notifications",
            {
                "type": notification.type.value,
                "title": notification.title,
                "content": notification.content,
                "details_json": serialize_json(notification.details),
                "created_at": notification.created_at.isoformat(),
            },
        )
        logger.debug(f"Recorded notification {notification.id} [{notification.type.value}] {title}")
        return notification

    async def error(self, title: str, content: str = "", details: dict[str, Any] | None = None) -> Notification:
        return await self.push(NotificationType.ERROR, title, content, details)

    async def success(self, title: str, content: str = "", details: dict[str, Any] | None = None) -> Notification:
        return await self.push(NotificationType.SUCCESS, title, content, details)

    async def list_notifications(
        self, type: NotificationType | None = None, page: int = 1, page_size: int = 50
    ) -> NotificationListResponse:
        """List notifications, newest first."""
        where_sql = "1=1"
        params: list[Any] = []
        if type:
            where_sql = "type = ?"
            params.append(type.value)

        count_result = await self.db.fetch_one(
            f"SELECT COUNT(*) as count FROM notifications WHERE {where_sql}", tuple(params)
        )
        total = count_result["count"] if count_result else 0

        offset = (page - 1) * page_size
        rows = await self.db.fetch_all(
            f"SELECT * FROM notifications WHERE {where_sql} ORDER BY id DESC LIMIT ? OFFSET ?",
            tuple(params + [page_size, offset]),
        )
        notifications = [self._row_to_notification(row) for row in rows]

        return NotificationListResponse(
            notifications=notifications,
            total=total,
            page=page,
            page_size=page_size,
            has_more=(offset + len(notifications)) < total,
        )

    async def delete(self, notification_id: int) -> bool:
        return await self.db.delete("notifications", notification_id)

    def _row_to_notification(self, row: dict) -> Notification:
        return Notification(
            id=row["id"],
            type=NotificationType(row["type"]),
            title=row["title"],
            content=row.get("content") or "",
            details=deserialize_json(row.get("details_json")),
            created_at=row["created_at"],
        )


# Singleton instance
_notification_store: NotificationStore | None = None


def get_notification_store() -> NotificationStore:
    """Get the global notification store instance."""
    global _notification_store
    if _notification_store is None:
        _notification_store = NotificationStore()
    return _notification_store
