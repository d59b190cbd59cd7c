"""Permission catalog, authorization engine and guards."""
