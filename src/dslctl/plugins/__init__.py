"""Extension layer — plugin system via pluggy.

Discovery: entry_points (group ``dslctl.plugins``) plus a local directory.
INVARIANT: Plugin failures are warnings, never errors.
"""

from dslctl.plugins.event_bus import EventBus
from dslctl.plugins.generator import PluginCandidateSource
from dslctl.plugins.hookspecs import hookimpl
from dslctl.plugins.manager import PluginManager

__all__ = ["EventBus", "PluginCandidateSource", "PluginManager", "hookimpl"]
