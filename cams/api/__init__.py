"""REST API: FastAPI app and routers."""
