"""Claim-and-process engine for per-unit edit streams.

Why SQLite claims instead of a broker lock service?
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~
A unit of work is a project+user pair whose messages must be applied in
order against one git checkout. Ownership only needs a store with atomic
conditional writes and point lookups: an ``INSERT`` guarded by the primary
key claims a free unit, and ``UPDATE ... WHERE worker_id = :me`` renews or
releases it. The same store carries the FIFO queues with lease-based
visibility, so one file is the single arbiter of ownership and ordering.

The interesting parts live above the store:

- ``processor`` interrupts in-flight work when a newer message arrives and
  drives edit, commit, build, deploy, and push with partial-failure rules.
- ``workspace`` maps threads to branches and never drops uncommitted work.
- ``steps`` runs external commands under an explicit cancellation token.
"""
