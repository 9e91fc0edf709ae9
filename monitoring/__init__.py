"""Monitoring package for LIQBOT: operator notifications."""

from monitoring.notifier import Notifier, NullNotifier, TelegramNotifier, build_notifier

__all__ = ["Notifier", "NullNotifier", "TelegramNotifier", "build_notifier"]
