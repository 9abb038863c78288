"""REST API module — FastAPI server and pydantic models."""
