"""
Fulfillment job queue.

This package provides a durable, database-backed stage queue with:
- Atomic claiming with FOR UPDATE SKIP LOCKED and per-claim leases
- Registry-based stage processors with an explicit result type
- A per-correlation run record summarizing every stage
- Scheduled (bounded) and continuous execution sharing one code path
"""
