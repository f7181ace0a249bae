"""Background jobs: the in-process queue, job handlers, batch operations and the scheduler."""
