from snapcart.middleware.request_log import RequestLoggingMiddleware

__all__ = ["RequestLoggingMiddleware"]
