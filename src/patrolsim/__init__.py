"""patrolsim — patrol automation for virtual tabletop hosts.

Guards blink or walk between waypoints, spot tokens, and run a capture
pipeline (bribery, combat, theft, blindfold, disregard, jail) backed by a
journal of undoable decisions.  ``PatrolEngine`` wires everything over a
``HostContext``; ``InMemoryHost`` provides one for tests and headless use.
"""

from .config import PatrolSettings
from .engine import PatrolEngine
from .host.context import HostContext
from .host.memory import InMemoryHost

__version__ = "0.1.0"

__all__ = ["HostContext", "InMemoryHost", "PatrolEngine", "PatrolSettings", "__version__"]
