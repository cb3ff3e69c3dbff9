"""
Infrastructure module - configuration, logging, and alerting.
"""

from .config import Settings, load_settings

from .logging_config import setup_logging

from .alerting import (
    AlertSeverity,
    SignalKind,
    Signal,
    SignalSink,
    LoggingSignalSink,
    WebhookSignalSink,
    AlertManager,
)

__all__ = [
    # config
    "Settings",
    "load_settings",
    # logging
    "setup_logging",
    # alerting
    "AlertSeverity",
    "SignalKind",
    "Signal",
    "SignalSink",
    "LoggingSignalSink",
    "WebhookSignalSink",
    "AlertManager",
]
