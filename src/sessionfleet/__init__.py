"""Keep a fleet of authenticated text sessions connected to one server."""

__version__ = "0.1.0"
