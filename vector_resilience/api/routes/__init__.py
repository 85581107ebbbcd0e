"""Management API routers."""
