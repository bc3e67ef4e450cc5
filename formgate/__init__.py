"""HTTP server for multipart/form-data routes, with pluggable routes, middlewares and health checks."""

__version__ = "0.1.0"