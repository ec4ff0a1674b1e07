"""
Registration Cache Sync - Redis-backed read cache for upstream registrations.

This package keeps a Redis cache of event registrations eventually consistent
with a rate-limited upstream data platform through webhooks, scheduled
reconciliation and operator-triggered repair, and buffers writes the upstream
refuses because of rate limiting.
"""

__version__ = "1.0.0"
__author__ = "Registration Sync Team"
