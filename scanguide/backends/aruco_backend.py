"""AprilTag/ArUco backend using OpenCV's aruco module."""
import logging
from typing import Any, Dict, List

import cv2
import numpy as np

from .base_backend import BaseBackend
from ..core.entities import TagDetection
from ..core.exceptions import DetectionError

logger = logging.getLogger(__name__)

# Names accepted in configuration -> cv2.aruco dictionary constant name
DICTIONARIES = {
    "APRILTAG_36h11": "DICT_APRILTAG_36h11",
    "APRILTAG_25h9": "DICT_APRILTAG_25h9",
    "ARUCO_4X4_50": "DICT_4X4_50",
    "ARUCO_5X5_100": "DICT_5X5_100",
}


def make_detector_params(aruco: Any) -> Any:
    """Detector parameters tuned for small, sharp tags in a downsampled ROI."""
    if hasattr(aruco, "DetectorParameters"):
        params = aruco.DetectorParameters()
    elif hasattr(aruco, "DetectorParameters_create"):
        params = aruco.DetectorParameters_create()
    else:
        raise DetectionError("Could not create ArUco DetectorParameters")

    if hasattr(params, "adaptiveThreshWinSizeMin"):
        params.adaptiveThreshWinSizeMin = 5
    if hasattr(params, "adaptiveThreshWinSizeMax"):
        params.adaptiveThreshWinSizeMax = 23
    if hasattr(params, "adaptiveThreshWinSizeStep"):
        params.adaptiveThreshWinSizeStep = 6
    if hasattr(aruco, "CORNER_REFINE_SUBPIX") and hasattr(params, "cornerRefinementMethod"):
        params.cornerRefinementMethod = aruco.CORNER_REFINE_SUBPIX
    if hasattr(params, "detectInvertedMarker"):
        params.detectInvertedMarker = False
    return params


class ArucoBackend(BaseBackend):
    """Fiducial detection with cv2.aruco (AprilTag 36h11 by default)."""

    def __init__(self, config: Dict[str, Any]):
        super().__init__(config)
        self._name = config.get("marker_dictionary", "APRILTAG_36h11")
        const_name = DICTIONARIES.get(self._name)
        if const_name is None or not hasattr(cv2, "aruco"):
            raise DetectionError(f"Unsupported marker dictionary: {self._name!r}")

        aruco = cv2.aruco
        self._dictionary = aruco.getPredefinedDictionary(getattr(aruco, const_name))
        self._params = make_detector_params(aruco)
        if hasattr(aruco, "ArucoDetector"):
            self._detector = aruco.ArucoDetector(self._dictionary, self._params)
        else:
            self._detector = None  # legacy API, OpenCV < 4.7

    def dictionary_name(self) -> str:
        return self._name

    def detect(self, gray: np.ndarray) -> List[TagDetection]:
        try:
            if self._detector is not None:
                corners, ids, _ = self._detector.detectMarkers(gray)
            else:
                corners, ids, _ = cv2.aruco.detectMarkers(gray, self._dictionary, parameters=self._params)
        except cv2.error as e:
            raise DetectionError(f"aruco detection failed: {e}") from e

        if ids is None or len(ids) == 0:
            return []

        out: List[TagDetection] = []
        for tag_id, quad in zip(ids.flatten(), corners):
            pts = quad.reshape(-1, 2).astype(np.float64)
            cx, cy = pts.mean(axis=0)
            out.append(TagDetection(
                id=int(tag_id),
                center_x=float(cx),
                center_y=float(cy),
                corners=tuple((float(x), float(y)) for x, y in pts),
            ))
        return out
