"""market-mirror: provider reference-data mirror and split-adjusted prices."""

__version__ = "0.1.0"
