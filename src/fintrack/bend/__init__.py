from .client import BendClient, OTPVerification
from .device import DeviceProfile
from .session import Session, SessionInfo, SessionStore
from .transactions import TransactionFilters, TransactionSet
from .transport import ApiResponse, Transport

__all__ = [
    "ApiResponse",
    "BendClient",
    "DeviceProfile",
    "OTPVerification",
    "Session",
    "SessionInfo",
    "SessionStore",
    "TransactionFilters",
    "TransactionSet",
    "Transport",
]
