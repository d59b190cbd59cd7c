"""SQLAlchemy async storage for principals, roles and bindings."""
