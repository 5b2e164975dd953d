"""
Delivery Queue — Decouples item acceptance from downstream delivery.

- Pipeline send stage ENQUEUES rendered messages
- A single drain loop DELIVERS them one at a time with adaptive pacing
- Throttled messages are demoted, exhausted ones dead-lettered
"""
