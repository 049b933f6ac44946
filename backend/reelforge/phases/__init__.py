"""One coroutine per pipeline stage, dispatched by project status."""
