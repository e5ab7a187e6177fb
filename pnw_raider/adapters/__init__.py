"""Adapters connecting the raider core to external systems."""
