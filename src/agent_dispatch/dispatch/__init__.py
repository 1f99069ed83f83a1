"""Task dispatch core: partitioned log, consumer groups, dispatcher, worker runtime.

Why not Celery / Dramatiq / Redis Streams?
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~
The consumers here are long-running agent sessions that may suspend,
checkpoint, and resume on another worker.  What matters is the pending-entry
model: a delivered record stays owned by one consumer until it is
acknowledged, and an idle entry can be reclaimed by anyone with a
compare-and-swap.  SQLite in WAL mode gives exactly that with no extra
service to operate, and the log/group/pending split keeps the semantics
close to a stream broker so the store can be swapped later.
"""
