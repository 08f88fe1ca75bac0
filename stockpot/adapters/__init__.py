"""Bridges between engine event callbacks and presentation layers."""
