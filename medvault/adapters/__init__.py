"""Adapters layer for MedVault.

Adapters implement the Port interfaces defined in the domain layer for
concrete backing stores.
"""
