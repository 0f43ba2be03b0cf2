"""
SLA Module
==========

Bounded Context for SLA matching and business-hours tracking.

Responsibilities:
- Select one SLA rule per ticket from asset, requester and ticket attributes
- Measure elapsed working minutes against business-hours calendars
- Pause, resume, stop and reopen the SLA clock on ticket lifecycle events
- Detect threshold crossings and escalate through notification ladders
- Load schedules, holidays and rules from a hot-reloaded YAML catalog
"""

__version__ = "1.0.0"
