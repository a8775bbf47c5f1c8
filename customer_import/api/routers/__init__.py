"""
FastAPI routers for the import service.

Routers stay thin: they resolve the caller, call the pipeline and translate
pipeline errors into HTTP responses.
"""
