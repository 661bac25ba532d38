"""Core primitives: shared enums, settings, exceptions and the storage contract."""
