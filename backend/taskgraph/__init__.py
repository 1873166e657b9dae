"""
Taskgraph: hierarchical task storage with dependency validation,
dependency-ordered batch execution, a bounded task cache, atomic
multi-task transactions and graph backup/restore.
"""

__version__ = "0.1.0"
