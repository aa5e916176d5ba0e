"""clinicsync - Offline-first sync engine for clinic records."""

__version__ = "0.1.0"
