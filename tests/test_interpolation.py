from __future__ import annotations

import math

import numpy as np
import pytest

from dataset_format import Annotation, Sample, SampleData
from interpolation import AnnotationInterpolator, get_color, interpolation_amount, slerp_quaternion
from conftest import yaw_quaternion


def _annotation(token, sample, instance, translation, yaw=0.0, category="vehicle.car", size=None):
    return Annotation(token=token, sample_token=sample, instance_token=instance,
                      translation=list(translation), size=size or [2.0, 4.0, 1.5],
                      rotation=yaw_quaternion(yaw), category_name=category)


def _sample_data(sample, stamp, key):
    return SampleData(token=f"sd_{stamp}", sample_token=sample, file_name=f"x__LIDAR_TOP__{stamp}.pcd.bin",
                      timestamp_us=stamp, is_key_frame=key, calibrated_sensor_token="cs")


@pytest.fixture
def interpolator() -> AnnotationInterpolator:
    samples = {
        "s0": Sample(token="s0", scene_token="scene", timestamp_us=100, next="s1"),
        "s1": Sample(token="s1", scene_token="scene", timestamp_us=200, prev="s0"),
    }
    annotations = {
        "s0": [
            _annotation("a0_car", "s0", "car", [0.0, 0.0, 0.0], yaw=0.0),
            _annotation("a0_gone", "s0", "gone", [9.0, 9.0, 9.0]),
        ],
        "s1": [
            _annotation("a1_car", "s1", "car", [10.0, 20.0, 2.0], yaw=math.pi / 2.0, size=[3.0, 5.0, 2.0]),
            _annotation("a1_new", "s1", "new", [1.0, 2.0, 3.0], category="human.pedestrian.adult"),
        ],
    }
    return AnnotationInterpolator(samples, annotations)


def _by_token(boxes):
    return {box.token: box for box in boxes}


def _quaternion_close(box, expected_wxyz) -> bool:
    o = box.orientation
    return abs(abs(np.dot([o.w, o.x, o.y, o.z], expected_wxyz)) - 1.0) < 1e-9


def test_key_frame_returns_raw_annotations(interpolator) -> None:
    boxes = _by_token(interpolator.boxes_for(_sample_data("s1", 200, key=True)))

    assert set(boxes) == {"a1_car", "a1_new"}
    car = boxes["a1_car"]
    assert (car.center.x, car.center.y, car.center.z) == (10.0, 20.0, 2.0)
    assert (car.size.x, car.size.y, car.size.z) == (3.0, 5.0, 2.0)
    assert _quaternion_close(car, yaw_quaternion(math.pi / 2.0))


def test_sample_without_previous_returns_raw_annotations(interpolator) -> None:
    boxes = interpolator.boxes_for(_sample_data("s0", 150, key=False))
    assert {box.token for box in boxes} == {"a0_car", "a0_gone"}


def test_midpoint_interpolation(interpolator) -> None:
    boxes = _by_token(interpolator.boxes_for(_sample_data("s1", 150, key=False)))

    car = boxes["a1_car"]
    assert car.center.x == pytest.approx(5.0)
    assert car.center.y == pytest.approx(10.0)
    assert car.center.z == pytest.approx(1.0)
    o = car.orientation
    assert math.sqrt(o.w ** 2 + o.x ** 2 + o.y ** 2 + o.z ** 2) == pytest.approx(1.0, abs=1e-9)
    assert _quaternion_close(car, yaw_quaternion(math.pi / 4.0))
    # size and category come from the current annotation
    assert (car.size.x, car.size.y, car.size.z) == (3.0, 5.0, 2.0)
    assert car.category_name == "vehicle.car"


def test_instance_missing_from_previous_is_unchanged(interpolator) -> None:
    boxes = _by_token(interpolator.boxes_for(_sample_data("s1", 150, key=False)))

    new = boxes["a1_new"]
    assert (new.center.x, new.center.y, new.center.z) == (1.0, 2.0, 3.0)
    assert "a0_gone" not in boxes


@pytest.mark.parametrize("stamp, expected_x", [(50, 0.0), (250, 10.0)])
def test_out_of_range_timestamps_are_clamped(interpolator, stamp, expected_x) -> None:
    boxes = _by_token(interpolator.boxes_for(_sample_data("s1", stamp, key=False)))
    assert boxes["a1_car"].center.x == pytest.approx(expected_x)


def test_interpolation_amount_bounds() -> None:
    assert interpolation_amount(100, 200, 50) == 0.0
    assert interpolation_amount(100, 200, 250) == 1.0
    assert interpolation_amount(100, 200, 125) == pytest.approx(0.25)
    assert interpolation_amount(100, 100, 100) == 1.0


def test_slerp_endpoints() -> None:
    q0 = yaw_quaternion(0.0)
    q1 = yaw_quaternion(1.0)
    assert abs(np.dot(slerp_quaternion(q0, q1, 0.0), q0)) == pytest.approx(1.0)
    assert abs(np.dot(slerp_quaternion(q0, q1, 1.0), q1)) == pytest.approx(1.0)


def test_unknown_sample_yields_no_boxes(interpolator) -> None:
    assert interpolator.boxes_for(_sample_data("elsewhere", 150, key=True)) == []


@pytest.mark.parametrize("category, rgba", [
    ("vehicle.car", (1.0, 0.619, 0.0, 1.0)),
    ("vehicle.bicycle", (1.0, 0.239, 0.388, 1.0)),
    ("vehicle.motorcycle", (1.0, 0.239, 0.388, 1.0)),
    ("vehicle.bus.rigid", (1.0, 0.619, 0.0, 1.0)),
    ("human.pedestrian.adult", (0.0, 0.0, 0.901, 1.0)),
    ("movable_object.trafficcone", (0.0, 0.0, 0.0, 1.0)),
    ("movable_object.barrier", (0.0, 0.0, 0.0, 1.0)),
    ("animal", (1.0, 0.0, 1.0, 1.0)),
])
def test_category_colors(category, rgba) -> None:
    color = get_color(category)
    assert (color.r, color.g, color.b, color.a) == rgba
