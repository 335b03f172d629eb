"""HTTP API: FastAPI app factory, response envelope, dependencies and routes."""
