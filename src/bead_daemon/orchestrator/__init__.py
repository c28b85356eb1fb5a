"""Bead orchestrator: file store, reconciler, executor and the daemon loop.

Why not a job queue library?
~~~~~~~~~~~~~~~~~~~~~~~~~~~~
Beads are plain JSON files that worker processes (coding agents, scripts)
read and edit in place, and that operators inspect and fix by hand. The
file *is* the queue entry, so a broker would only add a second source of
truth. What this package adds on top of the files:

- Crash-safe writes (temp file, backup, atomic rename) so a killed daemon
  or worker never leaves a half-written record.
- Stuck-bead recovery for records left ``in_progress`` by a dead daemon.
- A completion rule that accepts either the record itself or an external
  PRD as evidence that the work is done.
- Bounded retries and a self-restart backoff when whole cycles keep failing.
"""
