"""Moderation subsystem.

Self-contained modules:
- config schema (typed rule configs + validation)
- rule engine (ordered, first match wins, fails open)
- permission guard (audit-driven instance enforcement)
- member scanner (bulk evaluation + auto-ban)
"""
