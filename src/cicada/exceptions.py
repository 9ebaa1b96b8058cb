"""
Exception classes for CIcaDA key management
"""

from typing import Optional, Dict, Any


class CicadaError(Exception):
    """Base exception for all CIcaDA errors"""

    def __init__(self, message: str, error_code: str = "UNKNOWN_ERROR", details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.error_code = error_code
        self.details = details or {}


class ConfigurationError(CicadaError):
    """Exception raised for malformed paths or settings"""
    pass


class KeyGenerationError(CicadaError):
    """Exception raised when the key material provider cannot produce a key"""
    pass


class KeyValidationError(CicadaError):
    """Exception raised for invalid input to key constructors"""
    pass


class StorageError(CicadaError):
    """Exception raised for key storage, backup and rotation failures"""
    pass


class IntegrationError(CicadaError):
    """Exception raised for remote credential registry errors"""

    def __init__(self, message: str, error_code: str = "INTEGRATION_ERROR",
                 http_status: int = 0, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, error_code, details)
        self.http_status = http_status
