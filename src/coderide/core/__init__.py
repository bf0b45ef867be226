"""Core infrastructure: configuration, logging, errors, sandboxing and subprocesses."""
