"""
Transmission lifecycle: bounded Pending/Verified/Archived buffer and the
pipeline that creates, verifies and resonance-gates transmissions.
"""

from .buffer import (
    Transmission,
    TransmissionBuffer,
    TransmissionState,
)
from .pipeline import (
    TransmissionPipeline,
    encode_content,
)

__all__ = [
    "Transmission",
    "TransmissionBuffer",
    "TransmissionState",
    "TransmissionPipeline",
    "encode_content",
]
