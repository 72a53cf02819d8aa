"""
Message Queue — Decouples notification requests from delivery.

- The application layer PUBLISHES notification and completed-email jobs
- The notification worker FETCHES them in bounded batches and acks/nacks each
- Supports Redis Streams (production) and in-memory deques (dev, tests)
"""
