"""
Job Queue — Durable outbound delivery.

- RateLimiter admits sends per tenant per minute window (shared storage)
- OutboundQueue persists pending sends with backoff retry state
- Dispatcher drains the queue; SweepRunner runs it periodically
"""
from job_queue.rate_limiter import RateLimiter, floor_to_minute
from job_queue.outbound_queue import OutboundQueue, backoff_delay
from job_queue.dispatcher import Dispatcher, SweepRunner

__all__ = [
    "RateLimiter", "floor_to_minute",
    "OutboundQueue", "backoff_delay",
    "Dispatcher", "SweepRunner",
]
