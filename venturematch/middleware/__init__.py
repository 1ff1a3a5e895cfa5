"""
Middleware package for the FastAPI application.
"""
from venturematch.middleware.auth import APIKeyMiddleware, require_admin
from venturematch.middleware.error_handling import AppException, ErrorCode, setup_error_handling

__all__ = ['APIKeyMiddleware', 'require_admin', 'AppException', 'ErrorCode', 'setup_error_handling']
