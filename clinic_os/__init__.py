"""clinic_os - therapy session scheduling and lifecycle core."""

__version__ = "0.1.0"
