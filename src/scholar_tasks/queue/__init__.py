"""Background task queue core.

Tasks are admitted as PENDING rows in SQLite, claimed by workers with a single
guarded UPDATE, and moved to COMPLETED or FAILED by reported outcomes. Failed
tasks with retries left go back to PENDING with exponential backoff. Every
transition leaves an entry in ``task_logs``.

There is no broker: the SQLite file is the only shared state, so any number of
worker processes on the host can poll it safely.
"""
