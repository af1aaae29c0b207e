"""fleetplan - board transport requests, vehicle tasks and the day timeline."""

__version__ = "0.1.0"
