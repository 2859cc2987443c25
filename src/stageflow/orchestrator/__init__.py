"""Job orchestrator: stage state machine, sub-job queue and auto-repair.

Jobs move through the stages of their type, one stage execution at a time.
A stage whose output carries a plan decomposes its job into children that a
SQLite-backed queue runs strictly one after another, since siblings share a
single working tree. Failed jobs may be investigated, fixed and resubmitted
as new jobs by a bounded auto-repair loop.

Every state change is a compare-and-set on a persisted row, so concurrent
callers agree on a single winner without in-process locks.
"""
