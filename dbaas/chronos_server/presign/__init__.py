"""
Presigned URL generation.
"""

from .gateway import MAX_TTL_SECONDS, PresignGateway, verify_signed_url

__all__ = ["MAX_TTL_SECONDS", "PresignGateway", "verify_signed_url"]
