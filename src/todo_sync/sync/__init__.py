"""Synchronization of the task collection with its remote copy.

Import from the submodules directly, e.g.
``from todo_sync.sync.orchestrator import SyncOrchestrator``.
"""
