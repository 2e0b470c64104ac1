"""Persistent task queue that drives an interactive assistant session.

Why a JSON file and not SQLite or a broker?
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~
Only one task runs at a time per queue, and the queue rarely holds more than
a few dozen entries. What matters is that an operator can open the state
file, read it, and hand-edit it in an emergency, and that a crash mid-write
never leaves it half written. A single document replaced atomically under an
``flock`` covers both, with timestamped backups as the recovery path.

The interesting logic lives elsewhere:

- Completion detection from scraped terminal output (``completion``).
- Error classification driving retry or pause (``failure_classifier``).
- Usage-limit phrases parsed into an exact resume time (``usage_limit``).
- The per-task phase state machine (``workflow``).
"""
