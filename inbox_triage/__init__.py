"""
Adaptive email-triage service.

Priority job queue, rate-limited worker pool, batch triage pipeline and
automation rules engine for a Gmail-connected inbox.
"""

__version__ = "0.1.0"
