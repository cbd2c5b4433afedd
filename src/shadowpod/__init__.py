"""shadowpod - lifecycle orchestration and exec bridge for shadow pods.

Waits for shadow pods to reach a target phase, watches pod changes,
shares pods between clients through an annotation ref count, and runs
commands inside running pods.
"""

from shadowpod.version import __version__


__all__ = ["__version__"]
