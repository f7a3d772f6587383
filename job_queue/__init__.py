"""
Message Queue — one durable queue per step type.

- The engine PUBLISHES step jobs to the queue for the next step's type
- Step workers CONSUME each queue with their own concurrency
- Supports Redis Streams (production) and in-memory asyncio.Queue (dev)
"""
