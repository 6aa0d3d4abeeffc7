"""
Message Queue — Decouples execution scheduling from execution.

- The orchestrator PUBLISHES execution jobs (start, resume, cancel, recover)
- Consumers pull jobs and advance the named execution
- Supports Redis Streams (production) and in-memory asyncio.Queue (dev)
"""
