"""DriverKeeper - supervised driver execution for cluster worker nodes."""

__version__ = "0.1.0"
