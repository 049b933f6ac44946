"""Reference control plane: job queue, ownership lock, progress and storage."""
