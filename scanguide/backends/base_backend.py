"""Base interface for fiducial detection backends."""
from abc import ABC, abstractmethod
from typing import Any, Dict, List
import numpy as np
from ..core.entities import TagDetection

class BaseBackend(ABC):
    """Abstract base class for fiducial detection backends.

    Backends work in the coordinate space of the image they are given; the
    marker adapter maps results back to full-frame pixels.
    """

    def __init__(self, config: Dict[str, Any]):
        self.config = config

    @abstractmethod
    def detect(self, gray: np.ndarray) -> List[TagDetection]:
        """Detect tags in a single-channel uint8 image. Raises DetectionError on failure."""
        pass

    @abstractmethod
    def dictionary_name(self) -> str:
        """Identifier of the tag family this backend decodes."""
        pass
