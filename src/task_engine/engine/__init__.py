"""Durable task engine on a single SQLite file.

Why not Celery / Dramatiq / RQ?
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~
Generic queues move messages; the hard parts here are about the graph
around the messages:

- Batches are accepted atomically with in-batch ``depends_on`` references,
  cycle detection before anything is stored, and strict all-must-succeed
  readiness for dependents.
- Follow-up tasks declared on success or failure are spawned exactly once,
  in the same transaction as the parent's terminal transition.
- Idempotency keys map one request to one operation for a retention window,
  including concurrent duplicate submissions.

Every state change is a compare-and-set ``UPDATE ... WHERE status = ?``
against SQLite in WAL mode, so any number of worker threads or processes
can share one database file without a broker.
"""
