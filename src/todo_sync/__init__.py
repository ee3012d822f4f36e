"""todo-sync - offline-first task collection with cloud synchronization."""

__version__ = "0.1.0"
__author__ = "todo-sync Team"

from .todo import (
    Priority,
    TaskRecord,
    new_record,
)

__all__ = ["TaskRecord", "Priority", "new_record", "__version__"]
