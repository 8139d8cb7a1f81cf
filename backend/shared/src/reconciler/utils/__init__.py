"""Utility helpers shared by the reconciler services."""
