"""FastAPI adapter: middleware, dependencies and admin routes."""
