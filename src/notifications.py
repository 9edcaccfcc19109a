"""
notifications.py

Email notifications driven by application domain events.

Overview
--------
EmailNotificationService subscribes to the event bus and turns application
events into plain-text emails:

  application:created          -> the supervisor who received the application
  application:status_changed   -> student, supervisor and partner, minus the
                                  user who made the change
  application:resubmitted      -> the supervisor

Each recipient is sent to independently: one failed delivery is logged and
the remaining recipients are still attempted.  Nothing here ever raises back
into the event bus.

The transport is abstract (AbstractEmailSender); infrastructure.py provides
the logging sender used in development and tests.
"""

from __future__ import annotations

import abc
import logging
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

from events import (
    ApplicationCreatedEvent,
    ApplicationResubmittedEvent,
    ApplicationStatusChangedEvent,
    EventBus,
)
from repository import SupervisorRepository

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EmailRecipient:
    email: str
    name: str
    user_id: str


@dataclass(frozen=True)
class EmailMessage:
    sender: str
    to: str
    subject: str
    body: str


class AbstractEmailSender(abc.ABC):
    @abc.abstractmethod
    def send(self, message: EmailMessage) -> None:
        """Deliver one message; raise on failure."""


# (subject, opening line) per new application status
_STATUS_MESSAGES: Dict[str, Tuple[str, str]] = {
    "approved": ("Application Approved", "Great news! Your application has been approved."),
    "rejected": ("Application Update", "Your application has been reviewed."),
    "revision_requested": ("Revision Requested", "Your application requires some revisions."),
    "pending": ("Application Status Update", "The status of your application has been updated."),
}


class EmailNotificationService:
    def __init__(
        self,
        sender: AbstractEmailSender,
        supervisors: SupervisorRepository,
        from_address: str,
    ):
        self._sender = sender
        self._supervisors = supervisors
        self._from = from_address

    def register(self, bus: EventBus) -> None:
        bus.subscribe(ApplicationCreatedEvent.event_type, self.on_application_created)
        bus.subscribe(ApplicationStatusChangedEvent.event_type, self.on_status_changed)
        bus.subscribe(ApplicationResubmittedEvent.event_type, self.on_resubmitted)

    # ------------------------------------------------------------------
    # Event handlers
    # ------------------------------------------------------------------

    def on_application_created(self, event: ApplicationCreatedEvent) -> None:
        recipient = self._supervisor_recipient(event.supervisor_id, event.supervisor_name)
        if recipient is None:
            return
        body = (
            f"{event.student_name} has applied to work with you on "
            f"\"{event.project_title}\".\n\n"
            "You can review the application in your MentorMatch dashboard."
        )
        self._deliver([recipient], f"New Application - {event.project_title}", body, event.application_id)

    def on_status_changed(self, event: ApplicationStatusChangedEvent) -> None:
        recipients = self.status_change_recipients(event)
        if not recipients:
            logger.debug(
                "No recipients for status change of application %s (triggered by %s)",
                event.application_id, event.triggered_by_user_id,
            )
            return
        subject, opening = _STATUS_MESSAGES.get(event.new_status, _STATUS_MESSAGES["pending"])
        lines = [
            opening,
            "",
            f"Project: {event.project_title}",
            f"Previous Status: {event.previous_status}",
            f"New Status: {event.new_status}",
        ]
        if event.feedback:
            lines.append(f"Feedback: {event.feedback}")
        lines += ["", "You can view the full details in your MentorMatch dashboard."]
        self._deliver(
            recipients,
            f"{subject} - {event.project_title}",
            "\n".join(lines),
            event.application_id,
        )

    def on_resubmitted(self, event: ApplicationResubmittedEvent) -> None:
        if event.supervisor_id == event.triggered_by_user_id or not event.supervisor_email:
            return
        recipient = EmailRecipient(event.supervisor_email, event.supervisor_name, event.supervisor_id)
        body = (
            f"{event.student_name} has resubmitted their application for "
            f"\"{event.project_title}\" after your revision request."
        )
        self._deliver([recipient], f"Application Resubmitted - {event.project_title}", body, event.application_id)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def status_change_recipients(self, event: ApplicationStatusChangedEvent) -> List[EmailRecipient]:
        """Student, supervisor and partner of the application, excluding the triggering user."""
        if not event.triggered_by_user_id:
            return []
        triggered_by = event.triggered_by_user_id
        recipients: List[EmailRecipient] = []

        if event.student_id != triggered_by:
            recipients.append(EmailRecipient(event.student_email, event.student_name, event.student_id))

        if event.supervisor_id != triggered_by:
            supervisor = self._supervisor_recipient(event.supervisor_id, event.supervisor_name)
            if supervisor is not None:
                recipients.append(supervisor)

        if event.has_partner and event.partner_email and event.partner_id:
            if event.partner_id != triggered_by:
                recipients.append(
                    EmailRecipient(event.partner_email, event.partner_name or "Partner", event.partner_id)
                )
        return recipients

    def _supervisor_recipient(self, supervisor_id: str, name: str) -> Optional[EmailRecipient]:
        supervisor = self._supervisors.get(supervisor_id)
        if supervisor is None:
            logger.warning("Supervisor %s not found for email notification", supervisor_id)
            return None
        return EmailRecipient(supervisor.email, name or supervisor.full_name, supervisor.id)

    def _deliver(self, recipients: List[EmailRecipient], subject: str, body: str, application_id: str) -> int:
        """Send to each recipient independently; returns the number delivered."""
        delivered = 0
        for recipient in recipients:
            message = EmailMessage(
                sender=self._from,
                to=recipient.email,
                subject=subject,
                body=f"Hello {recipient.name},\n\n{body}",
            )
            try:
                self._sender.send(message)
                delivered += 1
            except Exception:
                logger.exception(
                    "Failed to email %s about application %s", recipient.email, application_id
                )
        failed = len(recipients) - delivered
        if failed:
            logger.warning(
                "Application %s emails: %d failed, %d succeeded", application_id, failed, delivered
            )
        return delivered
