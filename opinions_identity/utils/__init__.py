"""Shared utility functions and models for the identity service.

This package provides convenience re-exports so that consumers can import
directly from ``opinions_identity.utils`` while full absolute imports (e.g.
``from opinions_identity.utils.durations import parse_duration``) remain
supported.
"""

from opinions_identity.utils.audit import AuditEvent, log_audit_event
from opinions_identity.utils.clock import Clock, utc_now
from opinions_identity.utils.durations import DEFAULT_SESSION_TTL, parse_duration
from opinions_identity.utils.ids import generate_assignment_id, to_base36

__all__ = [
    "AuditEvent",
    "Clock",
    "DEFAULT_SESSION_TTL",
    "generate_assignment_id",
    "log_audit_event",
    "parse_duration",
    "to_base36",
    "utc_now",
]
