"""Versioned schema changes, applied by ``runner.apply_migrations`` when a store opens."""
