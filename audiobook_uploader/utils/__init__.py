"""Cross-cutting utilities for the pipeline.

This package contains helper functions used across multiple modules.
Utilities should be pure functions without business logic.

Modules:
    artifacts: Conventional artifact paths, resume checks, run folders.
    logging: structlog configuration and logger factory.
    process: Async subprocess execution with streaming and termination.
"""
