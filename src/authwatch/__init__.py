"""authwatch: SSH login monitor daemon.

Tails the host's authentication log, turns sshd login attempts into
structured events, stores them, alerts on successful logins and runs
recurring reports and maintenance on a schedule.
"""

__version__ = "0.1.0"

from authwatch.schema import Event, EventKind, Location

__all__ = ["Event", "EventKind", "Location", "__version__"]
