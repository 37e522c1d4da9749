import logging
from typing import Dict, List, Optional

import numpy as np
from scipy.spatial.transform import Rotation, Slerp

from dataset_format import Annotation, Sample, SampleData
from messages import Box, ColorRGBA, Quaternion, Vector3

log = logging.getLogger(__name__)

RED = ColorRGBA(1.0, 0.239, 0.388, 1.0)
ORANGE = ColorRGBA(1.0, 0.619, 0.0, 1.0)
BLUE = ColorRGBA(0.0, 0.0, 0.901, 1.0)
BLACK = ColorRGBA(0.0, 0.0, 0.0, 1.0)
MAGENTA = ColorRGBA(1.0, 0.0, 1.0, 1.0)

# Substring rules, first match wins.
CATEGORY_COLORS = (
    (("bicycle", "motorcycle"), RED),
    (("vehicle", "bus", "car", "construction_vehicle", "trailer", "truck"), ORANGE),
    (("pedestrian",), BLUE),
    (("cone", "barrier"), BLACK),
)


def get_color(category_name: str) -> ColorRGBA:
    for keywords, color in CATEGORY_COLORS:
        if any(keyword in category_name for keyword in keywords):
            return ColorRGBA(color.r, color.g, color.b, color.a)
    return ColorRGBA(MAGENTA.r, MAGENTA.g, MAGENTA.b, MAGENTA.a)


def interpolation_amount(t0: int, t1: int, t: int) -> float:
    """Fraction of the way from ``t0`` to ``t1``, with ``t`` clamped into [t0, t1]."""
    if t1 <= t0:
        return 1.0
    t = max(t0, min(t1, t))
    return float(t - t0) / float(t1 - t0)


def lerp(amount: float, p0, p1) -> np.ndarray:
    return (1.0 - amount) * np.asarray(p0, dtype=np.float64) + amount * np.asarray(p1, dtype=np.float64)


def slerp_quaternion(q0_wxyz, q1_wxyz, amount: float) -> List[float]:
    """Spherical interpolation of two (w, x, y, z) quaternions."""
    key_rotations = Rotation.from_quat([
        [q0_wxyz[1], q0_wxyz[2], q0_wxyz[3], q0_wxyz[0]],
        [q1_wxyz[1], q1_wxyz[2], q1_wxyz[3], q1_wxyz[0]],
    ])
    x, y, z, w = Slerp([0.0, 1.0], key_rotations)([amount]).as_quat()[0]
    return [float(w), float(x), float(y), float(z)]


def make_box(annotation: Annotation, center=None, rotation_wxyz=None) -> Box:
    if center is None:
        center = annotation.translation
    if rotation_wxyz is None:
        rotation_wxyz = annotation.rotation
    return Box(
        center=Vector3.from_list(center),
        size=Vector3.from_list(annotation.size),
        orientation=Quaternion.from_wxyz(rotation_wxyz),
        token=annotation.token,
        category_name=annotation.category_name,
        color=get_color(annotation.category_name),
    )


class AnnotationInterpolator:
    """Produces the boxes of one sample data record.

    Key frames get their own sample's annotations. Intermediate frames
    interpolate every instance that also appears in the previous sample:
    center linearly, orientation by slerp, size and category from the current
    annotation.
    """

    def __init__(self, samples: Dict[str, Sample], annotations: Dict[str, List[Annotation]]):
        self.samples = samples
        self.annotations = annotations

    def boxes_for(self, sample_data: SampleData) -> List[Box]:
        current = self.samples.get(sample_data.sample_token)
        if current is None:
            log.warning(f"Sample {sample_data.sample_token} of {sample_data.file_name} "
                        f"is not part of the scene")
            return []

        current_annotations = self.annotations.get(current.token, [])
        if sample_data.is_key_frame or not current.prev:
            return [make_box(annotation) for annotation in current_annotations]

        previous = self._previous_sample(current)
        if previous is None:
            return [make_box(annotation) for annotation in current_annotations]

        previous_by_instance = {
            annotation.instance_token: annotation
            for annotation in self.annotations.get(previous.token, [])
        }
        amount = interpolation_amount(previous.timestamp_us, current.timestamp_us,
                                      sample_data.timestamp_us)

        boxes = []
        for annotation in current_annotations:
            previous_annotation = previous_by_instance.get(annotation.instance_token)
            if previous_annotation is None:
                boxes.append(make_box(annotation))
                continue
            center = lerp(amount, previous_annotation.translation, annotation.translation)
            rotation = slerp_quaternion(previous_annotation.rotation, annotation.rotation, amount)
            boxes.append(make_box(annotation, center=center, rotation_wxyz=rotation))
        return boxes

    def _previous_sample(self, current: Sample) -> Optional[Sample]:
        previous = self.samples.get(current.prev)
        if previous is None:
            log.warning(f"Previous sample {current.prev} of {current.token} not found, "
                        f"using uninterpolated annotations")
        return previous
