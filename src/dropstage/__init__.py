"""Stage Cloud Foundry apps into droplets using a local container engine."""

__version__ = "0.1.0"
