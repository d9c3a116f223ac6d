"""
Integration tests for engineswitch.

These tests wire FeatureFlags, MigrationAdapter, RollbackManager and the
durable rollback state store together through MigrationSystem. They need no
external services.
"""
