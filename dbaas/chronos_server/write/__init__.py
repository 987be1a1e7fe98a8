"""
Write batching and counter debouncing.
"""

from .optimizer import BatchFlushResult, BlobUpload, PendingWrite, WriteOptimizer

__all__ = ["BatchFlushResult", "BlobUpload", "PendingWrite", "WriteOptimizer"]
