"""
Shared Kernel Module
====================

Generic infrastructure used by the SLA engine and its HTTP surface.

Contains logging and API middleware only. Business rules for SLA
matching and tracking stay inside the ``sla`` package.
"""

__version__ = "1.0.0"
