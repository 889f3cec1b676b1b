"""MedVault - queryable field encryption and role-based access for health records."""

__version__ = "1.0.0"
