"""Adapters layer for Registry Transfer.

This module contains the adapters that interface with external systems:
the host record stores and the exchange endpoint transport. Adapters
implement Port interfaces defined in the domain layer.
"""
