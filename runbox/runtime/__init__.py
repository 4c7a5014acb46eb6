"""Job execution.

This layer is responsible for:
- resolving job names against the commands directory
- spawning job processes and merging their stdout/stderr
- serializing runs and recording them in the log store

It stays independent from the HTTP layer (`runbox.api`), so the CLI and the
API share the same execution logic.
"""
