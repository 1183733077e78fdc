"""Enterprise directory access (ldap3) with fallback transports."""
from .client import ChangeReport, DirectoryClient
from .connection import DirectoryConnector, DirectorySession
from .strategies import AttemptRecord, Strategy, run_fallback

__all__ = [
    "AttemptRecord",
    "ChangeReport",
    "DirectoryClient",
    "DirectoryConnector",
    "DirectorySession",
    "Strategy",
    "run_fallback",
]
