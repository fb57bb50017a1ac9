"""
Time-ordered identifiers for correlation ids
"""
import os
import time
import uuid


def uuid7() -> uuid.UUID:
    """
    UUID version 7: 48-bit Unix timestamp in milliseconds followed by
    random bits, so ids sort by creation time.
    """
    value = (int(time.time() * 1000) & ((1 << 48) - 1)) << 80
    value |= int.from_bytes(os.urandom(10), "big")
    # Version nibble 0111 and variant bits 10
    value = (value & ~(0xF << 76)) | (0x7 << 76)
    value = (value & ~(0x3 << 62)) | (0x2 << 62)
    return uuid.UUID(int=value)
