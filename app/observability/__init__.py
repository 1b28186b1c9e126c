"""Request observability: correlation IDs, structlog logging and Prometheus metrics.

The middleware ties the pieces together; handlers only read the request
context and the registry the app factory injected.
"""
