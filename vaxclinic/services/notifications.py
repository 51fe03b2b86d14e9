"""Read side of in-app notifications."""

from __future__ import annotations

from vaxclinic.domain.errors import ForbiddenError, NotificationNotFoundError
from vaxclinic.domain.models import Notification
from vaxclinic.repos.memory import NotificationRepository


class NotificationService:
    def __init__(self, notifications: NotificationRepository) -> None:
        self.notifications = notifications

    def list_for_user(self, user_id: str, unread_only: bool = False) -> list[Notification]:
        items = self.notifications.list_for_user(user_id)
        if unread_only:
            return [n for n in items if not n.is_read]
        return items

    def unread_count(self, user_id: str) -> int:
        return len(self.list_for_user(user_id, unread_only=True))

    def mark_as_read(self, notification_id: str, user_id: str) -> Notification:
        notification = self.notifications.get(notification_id)
        if notification is None:
            raise NotificationNotFoundError(notification_id)
        if notification.user_id != user_id:
            raise ForbiddenError(
                "You can only mark your own notifications as read",
                notification_id=notification_id,
            )
        self.notifications.mark_read(notification_id)
        return notification

    def mark_all_as_read(self, user_id: str) -> int:
        unread = self.list_for_user(user_id, unread_only=True)
        for n in unread:
            self.notifications.mark_read(n.id)
        return len(unread)
