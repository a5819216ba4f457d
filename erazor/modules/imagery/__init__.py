"""
Imagery Module

Task records for background-removal requests and their persistence.
"""

from erazor.modules.imagery.models import ImageTask, ImageStatus, FailureKind

__all__ = ["ImageTask", "ImageStatus", "FailureKind"]
