"""DriverKeeper command line interface."""
