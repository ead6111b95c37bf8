"""PinGate: presence-gated, Lightning-paid actions on geofenced boards."""

__version__ = "1.0.0"
