"""
Job Scheduler Test Suite.

- retry policy table and backoff math
- JobQueue ordering, transitions, stats and clear
- Dispatcher drain, worker pool, rate limit and background loop
- JSON snapshot persistence
- AlertManager channels and health checks
"""
