"""Content workflow engine.

A canonical, optimistic-concurrency state machine driving the multi-stage
content-generation pipeline, with a best-effort audit trail and display
progress projections.
"""
