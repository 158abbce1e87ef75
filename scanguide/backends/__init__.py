"""Fiducial detection backend implementations."""

from .base_backend import BaseBackend
from .aruco_backend import ArucoBackend

__all__ = ["BaseBackend", "ArucoBackend"]
