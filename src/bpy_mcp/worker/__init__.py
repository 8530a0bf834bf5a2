"""Scene worker: the bridge that owns the worker process and the default worker program."""
