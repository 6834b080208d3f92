"""postflow: scheduled social publishing with engagement calibration."""

__version__ = "0.1.0"
