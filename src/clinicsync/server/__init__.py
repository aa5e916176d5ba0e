"""Reference remote store server for clinicsync."""
