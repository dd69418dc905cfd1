"""
Background workers — drive processing cycles and inactivity sweeps.

Every worker process polls the shared store; the conversation lock
makes sure one cycle per conversation runs at a time across processes.
"""
