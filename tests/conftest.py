"""Pytest fixtures: a miniature nuScenes-style dataset written to tmp_path."""
from __future__ import annotations

import json
import math
from dataclasses import dataclass
from pathlib import Path

import numpy as np
import pytest
from PIL import Image as PILImage

LOG_NAME = "n015-2018-07-24-11-22-45+0800"

T0 = 1_000_000
T_SWEEP = 1_250_000
T1 = 1_500_000

RADAR_PCD_FIELDS = [
    ("x", "F", 4), ("y", "F", 4), ("z", "F", 4), ("dyn_prop", "I", 1), ("id", "I", 2),
    ("rcs", "F", 4), ("vx", "F", 4), ("vy", "F", 4), ("vx_comp", "F", 4), ("vy_comp", "F", 4),
    ("is_quality_valid", "I", 1), ("ambig_state", "I", 1), ("x_rms", "I", 1), ("y_rms", "I", 1),
    ("invalid_state", "I", 1), ("pdh0", "I", 1), ("vx_rms", "I", 1), ("vy_rms", "I", 1),
]
_PCD_NUMPY = {("F", 4): "<f4", ("I", 1): "<i1", ("I", 2): "<i2"}


def yaw_quaternion(yaw: float) -> list[float]:
    return [math.cos(yaw / 2.0), 0.0, 0.0, math.sin(yaw / 2.0)]


def sensor_file(channel: str, stamp: int, ext: str, folder: str = "samples") -> str:
    return f"{folder}/{channel}/{LOG_NAME}__{channel}__{stamp}{ext}"


def write_lidar_bin(path: Path, points: int = 4) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    np.arange(points * 5, dtype=np.float32).tofile(path)


def write_camera_jpg(path: Path, size=(4, 3)) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    PILImage.new("RGB", size, color=(200, 10, 10)).save(path, "JPEG")


def write_radar_pcd(path: Path, points: int = 2, data: str = "binary") -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    dtype = np.dtype([(name, _PCD_NUMPY[(kind, size)]) for name, kind, size in RADAR_PCD_FIELDS])
    cloud = np.zeros(points, dtype=dtype)
    cloud["x"] = np.arange(points, dtype=np.float32) + 1.0
    cloud["rcs"] = 7.5
    cloud["dyn_prop"] = 3
    header = "\n".join([
        "# .PCD v0.7 - Point Cloud Data file format",
        "VERSION 0.7",
        "FIELDS " + " ".join(name for name, _, _ in RADAR_PCD_FIELDS),
        "SIZE " + " ".join(str(size) for _, _, size in RADAR_PCD_FIELDS),
        "TYPE " + " ".join(kind for _, kind, _ in RADAR_PCD_FIELDS),
        "COUNT " + " ".join("1" for _ in RADAR_PCD_FIELDS),
        f"WIDTH {points}",
        "HEIGHT 1",
        "VIEWPOINT 0 0 0 1 0 0 0",
        f"POINTS {points}",
        f"DATA {data}",
    ]) + "\n"
    if data == "ascii":
        rows = [" ".join(str(point[name].item()) for name, _, _ in RADAR_PCD_FIELDS) for point in cloud]
        path.write_text(header + "\n".join(rows) + "\n")
    else:
        path.write_bytes(header.encode("ascii") + cloud.tobytes())


def _sample_data(token, sample, filename, stamp, key, calibrated, ego_pose):
    return {
        "token": token, "sample_token": sample, "ego_pose_token": ego_pose,
        "calibrated_sensor_token": calibrated, "timestamp": stamp,
        "fileformat": filename.rsplit(".", 1)[-1], "is_key_frame": key,
        "height": 0, "width": 0, "filename": filename, "prev": "", "next": "",
    }


def _annotation(token, sample, instance, translation, yaw=0.0):
    return {
        "token": token, "sample_token": sample, "instance_token": instance,
        "visibility_token": "4", "attribute_tokens": [],
        "translation": translation, "size": [2.0, 4.0, 1.5],
        "rotation": yaw_quaternion(yaw), "prev": "", "next": "",
        "num_lidar_pts": 10, "num_radar_pts": 0,
    }


def build_tables(broken_scene_b: bool = False) -> dict:
    tables = {
        "scene": [
            {"token": "scene_a", "log_token": "log", "nbr_samples": 2,
             "first_sample_token": "s1", "last_sample_token": "s2",
             "name": "scene-0061", "description": "two keyframes"},
            {"token": "scene_b", "log_token": "log", "nbr_samples": 1,
             "first_sample_token": "b1", "last_sample_token": "b1",
             "name": "scene-0103", "description": "one keyframe"},
        ],
        "sample": [
            {"token": "s1", "timestamp": T0, "prev": "", "next": "s2", "scene_token": "scene_a"},
            {"token": "s2", "timestamp": T1, "prev": "s1", "next": "", "scene_token": "scene_a"},
            {"token": "b1", "timestamp": 5_000_000, "prev": "", "next": "", "scene_token": "scene_b"},
        ],
        "sensor": [
            {"token": "sensor_lidar", "channel": "LIDAR_TOP", "modality": "lidar"},
            {"token": "sensor_cam", "channel": "CAM_FRONT", "modality": "camera"},
            {"token": "sensor_radar", "channel": "RADAR_FRONT", "modality": "radar"},
            {"token": "sensor_misc", "channel": "MISC_SENSOR", "modality": "other"},
        ],
        "calibrated_sensor": [
            {"token": "cs_lidar", "sensor_token": "sensor_lidar",
             "translation": [0.9, 0.0, 1.8], "rotation": [1.0, 0.0, 0.0, 0.0], "camera_intrinsic": []},
            {"token": "cs_cam", "sensor_token": "sensor_cam",
             "translation": [1.7, 0.0, 1.5], "rotation": [0.5, -0.5, 0.5, -0.5],
             "camera_intrinsic": [[1266.4, 0.0, 816.3], [0.0, 1266.4, 491.5], [0.0, 0.0, 1.0]]},
            {"token": "cs_radar", "sensor_token": "sensor_radar",
             "translation": [3.4, 0.0, 0.5], "rotation": [1.0, 0.0, 0.0, 0.0], "camera_intrinsic": []},
            {"token": "cs_misc", "sensor_token": "sensor_misc",
             "translation": [0.0, 0.0, 0.0], "rotation": [1.0, 0.0, 0.0, 0.0], "camera_intrinsic": []},
        ],
        "ego_pose": [
            {"token": "ep0", "timestamp": T0, "translation": [100.0, 200.0, 0.0], "rotation": [1.0, 0.0, 0.0, 0.0]},
            {"token": "ep_sweep", "timestamp": T_SWEEP, "translation": [101.0, 200.0, 0.0], "rotation": [1.0, 0.0, 0.0, 0.0]},
            {"token": "ep1", "timestamp": T1, "translation": [102.0, 200.0, 0.0], "rotation": [1.0, 0.0, 0.0, 0.0]},
            {"token": "ep_b", "timestamp": 5_000_000, "translation": [0.0, 0.0, 0.0], "rotation": [1.0, 0.0, 0.0, 0.0]},
        ],
        "sample_data": [
            _sample_data("sd_lidar_1", "s1", sensor_file("LIDAR_TOP", T0, ".pcd.bin"), T0, True, "cs_lidar", "ep0"),
            _sample_data("sd_lidar_2", "s2", sensor_file("LIDAR_TOP", T1, ".pcd.bin"), T1, True, "cs_lidar", "ep1"),
            _sample_data("sd_lidar_sweep", "s2", sensor_file("LIDAR_TOP", T_SWEEP, ".pcd.bin", "sweeps"),
                         T_SWEEP, False, "cs_lidar", "ep_sweep"),
            _sample_data("sd_cam_1", "s1", sensor_file("CAM_FRONT", T0, ".jpg"), T0, True, "cs_cam", "ep0"),
            _sample_data("sd_radar_1", "s1", sensor_file("RADAR_FRONT", T0, ".pcd"), T0, True, "cs_radar", "ep0"),
            _sample_data("sd_misc_1", "s1", sensor_file("MISC_SENSOR", T0, ".bin"), T0, True, "cs_misc", "ep0"),
            _sample_data("sd_b_lidar", "b1", sensor_file("LIDAR_TOP", 5_000_000, ".pcd.bin"), 5_000_000, True,
                         "cs_missing" if broken_scene_b else "cs_lidar", "ep_b"),
        ],
        "category": [
            {"token": "cat_car", "name": "vehicle.car", "description": ""},
            {"token": "cat_ped", "name": "human.pedestrian.adult", "description": ""},
            {"token": "cat_barrier", "name": "movable_object.barrier", "description": ""},
        ],
        "instance": [
            {"token": "inst_car", "category_token": "cat_car", "nbr_annotations": 2},
            {"token": "inst_ped", "category_token": "cat_ped", "nbr_annotations": 1},
            {"token": "inst_new", "category_token": "cat_barrier", "nbr_annotations": 1},
        ],
        "sample_annotation": [
            _annotation("ann_car_1", "s1", "inst_car", [0.0, 0.0, 0.0], yaw=0.0),
            _annotation("ann_ped_1", "s1", "inst_ped", [5.0, 5.0, 0.0]),
            _annotation("ann_car_2", "s2", "inst_car", [10.0, 0.0, 0.0], yaw=math.pi / 2.0),
            _annotation("ann_new_2", "s2", "inst_new", [1.0, 1.0, 1.0]),
            _annotation("ann_b_car", "b1", "inst_car", [3.0, 3.0, 0.0]),
        ],
    }
    return tables


def write_tables(meta_dir: Path, tables: dict) -> None:
    meta_dir.mkdir(parents=True, exist_ok=True)
    for name, records in tables.items():
        (meta_dir / f"{name}.json").write_text(json.dumps(records))


def write_sensor_files(dataset_dir: Path) -> None:
    for stamp, folder in ((T0, "samples"), (T1, "samples"), (T_SWEEP, "sweeps"), (5_000_000, "samples")):
        write_lidar_bin(dataset_dir / sensor_file("LIDAR_TOP", stamp, ".pcd.bin", folder))
    write_camera_jpg(dataset_dir / sensor_file("CAM_FRONT", T0, ".jpg"))
    write_radar_pcd(dataset_dir / sensor_file("RADAR_FRONT", T0, ".pcd"))
    misc = dataset_dir / sensor_file("MISC_SENSOR", T0, ".bin")
    misc.parent.mkdir(parents=True, exist_ok=True)
    misc.write_bytes(b"\x00" * 8)


@dataclass
class MiniDataset:
    root: Path
    meta_dir: Path
    dataset_dir: Path
    output_dir: Path


def make_dataset(root: Path, broken_scene_b: bool = False) -> MiniDataset:
    dataset = MiniDataset(root=root, meta_dir=root / "v1.0-mini",
                          dataset_dir=root / "nuscenes", output_dir=root / "out")
    write_tables(dataset.meta_dir, build_tables(broken_scene_b=broken_scene_b))
    write_sensor_files(dataset.dataset_dir)
    return dataset


@pytest.fixture
def mini_dataset(tmp_path) -> MiniDataset:
    return make_dataset(tmp_path)


@pytest.fixture
def broken_dataset(tmp_path) -> MiniDataset:
    return make_dataset(tmp_path, broken_scene_b=True)


def read_log(path) -> list[tuple[str, int, str, dict]]:
    """Read an MCAP log back as (topic, log_time_ns, schema name, decoded message)."""
    from mcap.reader import make_reader

    messages = []
    with open(path, "rb") as f:
        reader = make_reader(f)
        for schema, channel, message in reader.iter_messages(log_time_order=False):
            messages.append((channel.topic, message.log_time, schema.name, json.loads(message.data)))
    return messages


def rename_scenes(meta_dir: Path, names) -> None:
    path = meta_dir / "scene.json"
    records = json.loads(path.read_text())
    for record, name in zip(records, names):
        record["name"] = name
    path.write_text(json.dumps(records))
