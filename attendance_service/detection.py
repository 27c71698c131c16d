"""
Detector capabilities consumed by the liveness and matching stages.

Concrete backends live in ``attendance_service.backends``; everything else in
the package only depends on these interfaces, so the algorithms can be driven
by synthetic detections.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import List, Optional

import numpy as np


@dataclass
class BoundingBox:
    x: float
    y: float
    width: float
    height: float


@dataclass
class FaceDetection:
    box: BoundingBox
    descriptor: Optional[np.ndarray] = None
    score: float = 1.0


@dataclass
class EyeLandmarks:
    """Six (x, y) points per eye, ordered corner, top, top, corner, bottom, bottom."""
    left: np.ndarray
    right: np.ndarray


class FaceDetector(ABC):
    # Match threshold calibrated for this detector's descriptor space, if it has its own
    match_threshold: Optional[float] = None

    @abstractmethod
    def detect(self, frame: np.ndarray) -> List[FaceDetection]:
        """Every face found in ``frame``, each with its descriptor."""


class LandmarkDetector(ABC):
    @abstractmethod
    def eye_landmarks(self, frame: np.ndarray) -> List[EyeLandmarks]:
        """Eye landmarks for every face found in ``frame``."""
