"""
SignalTriage: Clinical Signal Triage & Verification Engine
==========================================================

Coordinates unstructured patient-authored health data with a physician
review workflow.  Every clinical datum carries its origin and trust tier;
emergency content in an inbound message escalates immediately, whatever
the trust level, verification backlog, or system load.

Components: confidence scoring, the verification state machine, emergency
keyword escalation, the per-patient auto-lock circuit breaker, attribution
formatting, and a hash-chained audit log of every PHI-touching operation.

DISCLAIMER: This software is not a medical device.  It does not diagnose,
decide treatment, or deliver messages.  It classifies and routes signals
for review by licensed physicians.
"""

__version__ = "0.1.0"
