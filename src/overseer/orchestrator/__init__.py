"""Task orchestrator for phase-gated, concurrency-bounded worker execution.

Tasks of an outcome run in two ordered phases. Infrastructure tasks are
claimed first; execution tasks become claimable only after the outcome is
marked ``infrastructure_ready``. Claims are compare-and-set updates on the
task row, so any number of orchestrators (threads or processes) sharing one
SQLite database never hand the same task to two workers. Worker pools are a
hard per-phase bound: ready tasks beyond the bound stay ``pending`` until a
slot frees.
"""
