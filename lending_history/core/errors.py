from enum import Enum
from pydantic import BaseModel
from typing import Dict, List, Optional

class ErrorCode(str, Enum):
    MISSING_ENDPOINT = "MISSING_ENDPOINT"
    SCHEMA_DISCOVERY_FAILED = "SCHEMA_DISCOVERY_FAILED"
    TRANSPORT_FAILED = "TRANSPORT_FAILED"
    INVALID_ADDRESS = "INVALID_ADDRESS"
    STORE_FAILED = "STORE_FAILED"
    UNKNOWN = "UNKNOWN"

class ErrorResponse(BaseModel):
    error_code: ErrorCode
    message: str  # User-friendly message
    details: Optional[str] = None  # Technical details (only in dev mode)
    available_fields: Optional[List[str]] = None  # Root fields seen during discovery

# Custom Exception Classes
class HistoryError(Exception):
    def __init__(self, code: ErrorCode, user_msg: str, details: str = None):
        self.code = code
        self.user_msg = user_msg
        self.details = details
        super().__init__(f"{user_msg} ({details})" if details else user_msg)

class MissingEndpointConfigError(HistoryError):
    def __init__(self, protocol: str, chain: str):
        super().__init__(
            ErrorCode.MISSING_ENDPOINT,
            "Missing subgraph URL for protocol/chain.",
            f"No endpoint configured for protocol={protocol} chain={chain}"
        )
        self.protocol = protocol
        self.chain = chain

class SchemaDiscoveryError(HistoryError):
    def __init__(
        self,
        endpoint: str,
        available_fields: List[str],
        unusable_fields: Optional[Dict[str, str]] = None
    ):
        self.endpoint = endpoint
        self.available_fields = list(available_fields)
        self.unusable_fields = dict(unusable_fields or {})
        details = f"Available root fields: {', '.join(self.available_fields) or '(none)'}"
        if self.unusable_fields:
            rejected = "; ".join(f"{name}: {reason}" for name, reason in self.unusable_fields.items())
            details += f". Available but unusable: {rejected}"
        super().__init__(
            ErrorCode.SCHEMA_DISCOVERY_FAILED,
            "No usable event query field found on subgraph.",
            details
        )

class TransportError(HistoryError):
    def __init__(self, endpoint: str, message: str, status_code: Optional[int] = None):
        super().__init__(
            ErrorCode.TRANSPORT_FAILED,
            "Subgraph request failed.",
            message
        )
        self.endpoint = endpoint
        self.status_code = status_code

class InvalidAddressError(HistoryError):
    def __init__(self, address: str):
        super().__init__(
            ErrorCode.INVALID_ADDRESS,
            "Invalid Ethereum address format.",
            f"Address {address} does not match 0x[40 hex chars]"
        )

class EventStoreError(HistoryError):
    def __init__(self, operation: str, message: str):
        super().__init__(
            ErrorCode.STORE_FAILED,
            f"Failed to {operation}.",
            message
        )
