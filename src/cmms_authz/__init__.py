"""Role-based access control for the maintenance-management application."""

__version__ = "0.1.0"
