"""Operation scheduling and execution engine.

Accepts operation requests, serializes them per (app, env) resource,
supervises the external processes that implement them, streams their
output to live subscribers, and composes them into lifecycle pipelines.
"""
