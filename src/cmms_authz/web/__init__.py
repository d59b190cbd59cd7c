"""FastAPI surface for RBAC administration."""
