"""
AirDraw Shape Analyzer - Contour signatures and similarity scoring.

A signature is (type, area, compactness, vertex count). Vertices come from
cv2.approxPolyDP with a tolerance of 3% of the perimeter.

Classification:
    compactness > 0.85 and vertices >= 8  -> Circle
    vertices == 3                         -> Triangle
    vertices == 4                         -> Rectangle
    otherwise                             -> Polygon

Match score:
    0.4 * typeMatch + 0.2 * areaSim + 0.2 * compactnessSim + 0.2 * vertexSim
"""

import math
from typing import NamedTuple, Optional

import cv2
import numpy as np

from .models import ShapeSignature, ShapeType


class ShapeMatch(NamedTuple):
    """Per-component breakdown of a match score."""
    type_match: float
    area_similarity: float
    compactness_similarity: float
    vertex_similarity: float
    score: float


class ShapeAnalyzer:
    """Holds the reference signature and scores candidates against it."""

    APPROX_TOLERANCE = 0.03
    CIRCLE_COMPACTNESS = 0.85
    CIRCLE_MIN_VERTICES = 8

    TYPE_WEIGHT = 0.4
    AREA_WEIGHT = 0.2
    COMPACTNESS_WEIGHT = 0.2
    VERTEX_WEIGHT = 0.2
    TYPE_MISMATCH = 0.3
    VERTEX_MISMATCH = 0.5
    COMPACTNESS_FLOOR = 0.1

    def __init__(self):
        self.reference: Optional[ShapeSignature] = None

    @property
    def is_calibrated(self) -> bool:
        return self.reference is not None

    @classmethod
    def classify_shape(cls, compactness: float, vertices: int) -> ShapeType:
        if compactness > cls.CIRCLE_COMPACTNESS and vertices >= cls.CIRCLE_MIN_VERTICES:
            return ShapeType.CIRCLE
        if vertices == 3:
            return ShapeType.TRIANGLE
        if vertices == 4:
            return ShapeType.RECTANGLE
        return ShapeType.POLYGON

    @classmethod
    def measure(cls, contour: np.ndarray) -> ShapeSignature:
        """Compute the signature of a single contour."""
        area = float(cv2.contourArea(contour))
        perimeter = float(cv2.arcLength(contour, True))
        compactness = (4.0 * math.pi * area) / (perimeter * perimeter) if perimeter > 0 else 0.0
        approx = cv2.approxPolyDP(contour, cls.APPROX_TOLERANCE * perimeter, True)
        vertices = len(approx)
        return ShapeSignature(
            shape_type=cls.classify_shape(compactness, vertices),
            area=area,
            compactness=compactness,
            vertex_count=vertices,
        )

    def analyze_reference_shape(self, contour: np.ndarray) -> ShapeSignature:
        """Measure `contour` and record it as the reference."""
        self.reference = self.measure(contour)
        return self.reference

    @classmethod
    def match_components(cls, candidate: ShapeSignature, reference: ShapeSignature) -> ShapeMatch:
        type_match = 1.0 if candidate.shape_type == reference.shape_type else cls.TYPE_MISMATCH

        if reference.area > 0:
            area_sim = 1.0 - min(1.0, abs(candidate.area - reference.area) / reference.area)
        else:
            area_sim = 0.0

        compact_sim = 1.0 - min(
            1.0,
            abs(candidate.compactness - reference.compactness)
            / max(cls.COMPACTNESS_FLOOR, reference.compactness),
        )

        if reference.shape_type == ShapeType.CIRCLE or candidate.vertex_count == reference.vertex_count:
            vertex_sim = 1.0
        else:
            vertex_sim = cls.VERTEX_MISMATCH

        score = (
            cls.TYPE_WEIGHT * type_match
            + cls.AREA_WEIGHT * area_sim
            + cls.COMPACTNESS_WEIGHT * compact_sim
            + cls.VERTEX_WEIGHT * vertex_sim
        )
        return ShapeMatch(type_match, area_sim, compact_sim, vertex_sim, score)

    @classmethod
    def score_signature(cls, candidate: ShapeSignature, reference: ShapeSignature) -> float:
        return cls.match_components(candidate, reference).score

    def calculate_shape_match_score(
        self,
        contour: np.ndarray,
        reference: Optional[ShapeSignature] = None,
    ) -> float:
        """Score a contour against the reference, in [0, 1]. 0 if uncalibrated."""
        reference = reference or self.reference
        if reference is None:
            return 0.0
        return self.score_signature(self.measure(contour), reference)
