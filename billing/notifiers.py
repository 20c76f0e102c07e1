import logging

import requests
from django.conf import settings
from django.core.mail import EmailMessage, get_connection
from django.template.loader import render_to_string
from django.utils.module_loading import import_string

from .exceptions import NotificationError

logger = logging.getLogger(__name__)


REMINDER_SUBJECTS = {
    "PRE_DUE": "Upcoming payment for {course_name} - {academy_name}",
    "DUE_TODAY": "Payment due today for {course_name} - {academy_name}",
    "OVERDUE": "Overdue payment for {course_name} - {academy_name}",
}


# ==================== EMAIL ====================
class EmailNotifier:
    """
    Payment reminder emails through the configured Django email backend.

    ``send`` returns True when the backend accepted the message and lets
    transport errors propagate; the dispatcher records them per plan.
    """

    channel = 'email'
    template_name = 'emails/payment_reminder.html'

    def __init__(self, timeout=None, from_email=None):
        self.timeout = timeout or getattr(settings, 'EMAIL_TIMEOUT', None) or 10
        self.from_email = from_email or getattr(settings, 'DEFAULT_FROM_EMAIL', None)

    def build_subject(self, params):
        template = REMINDER_SUBJECTS.get(params.get('category'), REMINDER_SUBJECTS['PRE_DUE'])
        return template.format(
            course_name=params.get('course_name') or 'your course',
            academy_name=params.get('academy_name') or 'Academy',
        )

    def send(self, contact, template_params, timeout=None):
        subject = self.build_subject(template_params)
        message = render_to_string(self.template_name, template_params)

        connection = get_connection(timeout=timeout or self.timeout)
        email = EmailMessage(subject, message, from_email=self.from_email, to=[contact], connection=connection)
        email.content_subtype = "html"
        sent = email.send(fail_silently=False)

        logger.info(f"[EmailNotifier] Reminder email to {contact}: sent={sent}")
        return sent > 0


# ==================== WHATSAPP ====================
class WhatsAppNotifier:
    """
    Payment reminders over a WhatsApp Business HTTP gateway.
    """

    channel = 'whatsapp'

    def __init__(self, base_url=None, api_token=None, timeout=None):
        self.base_url = (base_url or getattr(settings, 'WHATSAPP_API_BASE_URL', '')).rstrip('/')
        self.api_token = api_token if api_token is not None else getattr(settings, 'WHATSAPP_API_TOKEN', '')
        self.timeout = timeout or 10

    def build_text(self, params):
        lines = [
            f"Hello {params.get('student_name') or 'Student'},",
            f"This is a reminder from {params.get('academy_name') or 'Academy'}.",
            f"Amount due: {params.get('amount_due')} for {params.get('course_name') or 'your course'}.",
            f"Due date: {params.get('due_date')}.",
        ]
        if params.get('days_overdue'):
            lines.append(f"The payment is {params['days_overdue']} day(s) overdue.")
        return "\n".join(lines)

    def send(self, contact, template_params, timeout=None):
        if not self.base_url:
            raise NotificationError("WHATSAPP_API_BASE_URL is not configured")

        payload = {
            'to': contact,
            'type': 'text',
            'text': {'body': self.build_text(template_params)},
        }
        headers = {
            'Authorization': f"Bearer {self.api_token}",
            'Content-Type': 'application/json'
        }

        try:
            response = requests.post(
                f"{self.base_url}/messages",
                json=payload,
                headers=headers,
                timeout=timeout or self.timeout
            )
            response.raise_for_status()
        except requests.exceptions.RequestException as e:
            logger.error(f"[WhatsAppNotifier] Send to {contact} failed: {str(e)}")
            raise NotificationError(f"WhatsApp send failed: {str(e)}")

        logger.info(f"[WhatsAppNotifier] Reminder sent to {contact}")
        return True


NOTIFIER_CLASSES = {
    'email': 'billing.notifiers.EmailNotifier',
    'whatsapp': 'billing.notifiers.WhatsAppNotifier',
}


def get_notifier(name=None, **kwargs):
    """
    Build the configured notifier. ``name`` is a short channel name or a
    dotted path to a class exposing ``send(contact, template_params)``.
    """
    name = name or getattr(settings, 'BILLING_NOTIFIER', 'email')
    path = NOTIFIER_CLASSES.get(name, name)
    try:
        notifier_class = import_string(path)
    except ImportError as e:
        raise NotificationError(f"Unknown notifier '{name}': {str(e)}")
    return notifier_class(**kwargs)
