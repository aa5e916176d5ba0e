"""Client side of clinicsync: local store, sync engine and undo."""
