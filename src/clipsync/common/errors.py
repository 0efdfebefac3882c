"""
Error taxonomy and operator-facing error messages

Exceptions raised inside the sync engine all derive from SyncError and carry
an ErrorCode. The engine handles them locally; the code maps to a short
message plus a suggestion when something has to be shown to the operator.
"""
from enum import Enum
from dataclasses import dataclass
from typing import Optional


class ErrorCode(Enum):
    """Error codes for categorization"""
    # Discovery errors
    PUBLISH_FAILED = "publish_failed"
    BROWSE_FAILED = "browse_failed"

    # Network errors
    PEER_UNREACHABLE = "peer_unreachable"
    CONNECTION_TIMEOUT = "connection_timeout"
    SEND_FAILED = "send_failed"
    PORT_IN_USE = "port_in_use"

    # Crypto errors
    DECRYPT_FAILED = "decrypt_failed"
    NO_PASSPHRASE = "no_passphrase"

    # Protocol errors
    PROTOCOL_ERROR = "protocol_error"
    MESSAGE_TOO_LARGE = "message_too_large"
    UNKNOWN_TRANSFER = "unknown_transfer"
    CORRUPT_CHUNK = "corrupt_chunk"

    # Storage errors
    DISK_FULL = "disk_full"
    PERMISSION_DENIED = "permission_denied"
    WRITE_FAILED = "write_failed"

    # Content errors
    ENCODING_ERROR = "encoding_error"
    FILE_TOO_LARGE = "file_too_large"

    # General
    UNKNOWN = "unknown"


@dataclass
class SyncErrorInfo:
    """User-friendly error with message and suggestion"""
    message: str
    suggestion: str
    code: str = ""

    def __str__(self) -> str:
        result = f"Error: {self.message}"
        if self.suggestion:
            result += f"\n  Suggestion: {self.suggestion}"
        return result

    def to_dict(self) -> dict:
        return {
            "code": self.code,
            "message": self.message,
            "suggestion": self.suggestion
        }


class SyncError(Exception):
    """Base class for all sync engine errors"""
    code = ErrorCode.UNKNOWN

    def __init__(self, message: str = "", code: Optional[ErrorCode] = None):
        super().__init__(message)
        if code is not None:
            self.code = code


class DiscoveryError(SyncError):
    """Service advertisement or browsing failed"""
    code = ErrorCode.PUBLISH_FAILED


class ConnectError(SyncError):
    """No known address of a peer accepted a connection"""
    code = ErrorCode.PEER_UNREACHABLE


class SendError(SyncError):
    """Connection was made but the message was not delivered"""
    code = ErrorCode.SEND_FAILED


class CryptoError(SyncError):
    code = ErrorCode.DECRYPT_FAILED


class DecryptError(CryptoError):
    """Authentication tag mismatch or malformed ciphertext"""


class ProtocolError(SyncError):
    """Malformed envelope, unknown transfer, unexpected chunk"""
    code = ErrorCode.PROTOCOL_ERROR


class CompressionError(ProtocolError):
    """Decompressed length differs from the advertised original size"""
    code = ErrorCode.CORRUPT_CHUNK


class StorageError(SyncError):
    """Writing a received file to disk failed"""
    code = ErrorCode.WRITE_FAILED


class EncodingError(SyncError):
    """Text cannot be represented as UTF-8 and therefore cannot be hashed"""
    code = ErrorCode.ENCODING_ERROR


ERROR_MESSAGES = {
    ErrorCode.PUBLISH_FAILED: SyncErrorInfo(
        code="publish_failed",
        message="Could not advertise this device on the local network",
        suggestion="Check that no other instance is running and that multicast DNS is allowed by the firewall"
    ),

    ErrorCode.BROWSE_FAILED: SyncErrorInfo(
        code="browse_failed",
        message="Could not browse for other devices",
        suggestion="Peers will appear once the network is available again"
    ),

    ErrorCode.PEER_UNREACHABLE: SyncErrorInfo(
        code="peer_unreachable",
        message="Peer device is not responding on any known address",
        suggestion="Make sure clipsync is running on the other device and both devices are on the same network"
    ),

    ErrorCode.CONNECTION_TIMEOUT: SyncErrorInfo(
        code="connection_timeout",
        message="Connection timed out while trying to reach peer",
        suggestion="Check your network connection and firewall settings (port 5566 must be open)"
    ),

    ErrorCode.SEND_FAILED: SyncErrorInfo(
        code="send_failed",
        message="Peer did not acknowledge the message",
        suggestion="The peer may be overloaded or shutting down. The next change will be sent again"
    ),

    ErrorCode.PORT_IN_USE: SyncErrorInfo(
        code="port_in_use",
        message="The sync port is already in use",
        suggestion="Another instance may be running, or pick a different port with 'clipsync run --port <N>'"
    ),

    ErrorCode.DECRYPT_FAILED: SyncErrorInfo(
        code="decrypt_failed",
        message="A message could not be decrypted",
        suggestion="All devices must use the same passphrase and key salt"
    ),

    ErrorCode.NO_PASSPHRASE: SyncErrorInfo(
        code="no_passphrase",
        message="No shared passphrase configured",
        suggestion="Set one with the 'passphrase' key in the configuration file on every device"
    ),

    ErrorCode.PROTOCOL_ERROR: SyncErrorInfo(
        code="protocol_error",
        message="Communication protocol error with peer",
        suggestion="Ensure both devices are running the same version of clipsync"
    ),

    ErrorCode.MESSAGE_TOO_LARGE: SyncErrorInfo(
        code="message_too_large",
        message="Received message exceeds maximum allowed size",
        suggestion="This may indicate a protocol mismatch or corrupted data"
    ),

    ErrorCode.UNKNOWN_TRANSFER: SyncErrorInfo(
        code="unknown_transfer",
        message="Received a file chunk for a transfer that is not in progress",
        suggestion="Copy the file again on the sending device"
    ),

    ErrorCode.CORRUPT_CHUNK: SyncErrorInfo(
        code="corrupt_chunk",
        message="A file chunk failed its integrity check",
        suggestion="Copy the file again. If the problem persists, check your network connection"
    ),

    ErrorCode.DISK_FULL: SyncErrorInfo(
        code="disk_full",
        message="Not enough disk space to receive the file",
        suggestion="Free up disk space and try again"
    ),

    ErrorCode.PERMISSION_DENIED: SyncErrorInfo(
        code="permission_denied",
        message="Permission denied when writing the received file",
        suggestion="Check permissions of the download directory"
    ),

    ErrorCode.WRITE_FAILED: SyncErrorInfo(
        code="write_failed",
        message="Could not write the received file",
        suggestion="Check the download directory and free disk space"
    ),

    ErrorCode.ENCODING_ERROR: SyncErrorInfo(
        code="encoding_error",
        message="Text could not be encoded as UTF-8",
        suggestion="The item is still sent but cannot be de-duplicated"
    ),

    ErrorCode.FILE_TOO_LARGE: SyncErrorInfo(
        code="file_too_large",
        message="File exceeds the maximum allowed size",
        suggestion="Raise 'max_file_size_mb' in the configuration file"
    ),

    ErrorCode.UNKNOWN: SyncErrorInfo(
        code="unknown",
        message="An unexpected error occurred",
        suggestion="Check the log file for more details"
    ),
}


def get_error(code: ErrorCode) -> SyncErrorInfo:
    """Get user-friendly error for a given error code"""
    return ERROR_MESSAGES.get(code, ERROR_MESSAGES[ErrorCode.UNKNOWN])


def get_error_from_exception(exc: Exception) -> SyncErrorInfo:
    """Map an exception to a user-friendly error"""
    if isinstance(exc, SyncError):
        return get_error(exc.code)

    exc_str = str(exc).lower()
    exc_type = type(exc).__name__

    if isinstance(exc, TimeoutError) or "timed out" in exc_str:
        return get_error(ErrorCode.CONNECTION_TIMEOUT)
    if isinstance(exc, ConnectionRefusedError) or "connection refused" in exc_str:
        return get_error(ErrorCode.PEER_UNREACHABLE)
    if "address already in use" in exc_str:
        return get_error(ErrorCode.PORT_IN_USE)
    if isinstance(exc, PermissionError) or "permission denied" in exc_str:
        return get_error(ErrorCode.PERMISSION_DENIED)
    if "no space left" in exc_str:
        return get_error(ErrorCode.DISK_FULL)

    error = get_error(ErrorCode.UNKNOWN)
    return SyncErrorInfo(
        code=error.code,
        message=f"{error.message}: {exc_type}",
        suggestion=error.suggestion
    )


def format_error(code: ErrorCode, details: Optional[str] = None) -> str:
    """Format error message for display"""
    error = get_error(code)
    result = str(error)
    if details:
        result = f"{result}\n  Details: {details}"
    return result
