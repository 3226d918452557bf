"""Out-of-band delivery of login codes."""

from __future__ import annotations

from authproxy.notify.mailer import Delivery, MailtrapNotifier, Notifier

__all__ = ["Delivery", "MailtrapNotifier", "Notifier"]
