"""HTTP surface: FastAPI webhook receiver and flow endpoints."""
