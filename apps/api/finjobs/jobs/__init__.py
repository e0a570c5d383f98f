"""Background job processing: queue store, queue manager and worker pool."""
