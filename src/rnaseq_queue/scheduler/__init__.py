"""Admission-controlled sample scheduler layered on a task engine.

Why not a plain Prefect flow with a concurrency limit?
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~
The engine already runs stages in parallel and retries them.  What it does not
give us is the part this package owns:

- A durable work queue (``staged`` / ``admitted`` / ``done`` directories) that
  survives a crash and can be resumed without a database.
- A single lock-guarded transition that admits the next sample only when a
  running one finishes, so at most ``queue_size`` samples hold disk at once.
- Reference counting of large intermediate files across branches, so each
  file is reclaimed as soon as its last consumer signals, and not before.
- Sparse reclaim that keeps file size and timestamps intact, which keeps
  the engine's own result cache valid across restarts.
"""
