"""
HSSE Guard Severity Policy & SLA Escalation Engine
===================================================

A Python engine for the time-governed parts of an HSSE (Health, Safety,
Security, Environment) workflow platform.  Provides the five-level
severity policy table, the mandatory minimum-severity classifier, per-tenant
SLA threshold resolution, and an idempotent escalation sweep that advances
open incidents and corrective actions through warning, first escalation and
second escalation.

Storage, notification delivery, UI and authentication are external
collaborators reached through the protocols in ``hsseguard.store`` and
``hsseguard.notifications``.
"""

__version__ = "0.1.0"
