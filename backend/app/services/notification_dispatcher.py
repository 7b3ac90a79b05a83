import logging
from typing import Any, Dict, Optional

from app.services.email_sender import EmailSender, email_sender
from app.services.email_templates import render
from app.services.errors import MarketplaceError
from app.services.notification_store import NotificationStore, notification_store
from app.services.request_store import RequestStore, request_store

logger = logging.getLogger(__name__)


class NotificationDispatcher:
    """Fire-and-forget delivery of workflow notifications.

    Called only after the state change it reports has committed. Any failure is
    logged and reported as ``False``; it never propagates to the caller.
    """

    def __init__(
        self,
        notifications: NotificationStore,
        emails: EmailSender,
        requests: Optional[RequestStore] = None,
    ):
        self._notifications = notifications
        self._emails = emails
        self._requests = requests

    def dispatch(
        self,
        user_id: str,
        template: str,
        data: Dict[str, Any],
        email: Optional[str] = None,
    ) -> bool:
        try:
            message = render(template, data)
            self._notifications.create(
                user_id=user_id,
                title=message.title,
                body=message.body,
                category=message.category,
                deep_link=message.deep_link,
            )
            if email:
                self._emails.send(to=email, subject=message.title, html=message.html)
        except Exception:
            logger.exception("Notification failed template=%s user=%s", template, user_id)
            return False
        return True

    def notify_customer(self, template: str, request_id: str, pro_id: Optional[str] = None, **extra: Any) -> bool:
        context = self._context(request_id, pro_id)
        if context is None:
            return False
        return self.dispatch(
            context["customer_id"],
            template,
            {**context, **extra},
            email=context["contact_email"] or None,
        )

    def notify_pro(self, template: str, request_id: str, pro_id: str, **extra: Any) -> bool:
        context = self._context(request_id, pro_id)
        if context is None:
            return False
        return self.dispatch(pro_id, template, {**context, **extra}, email=context["pro_email"] or None)

    def _context(self, request_id: str, pro_id: Optional[str]) -> Optional[Dict[str, Any]]:
        if self._requests is None:
            return None
        try:
            return self._requests.notification_context(request_id, pro_id)
        except MarketplaceError:
            logger.exception("Notification context unavailable request=%s", request_id)
            return None


notification_dispatcher = NotificationDispatcher(notification_store, email_sender, request_store)
