import os
import logging
from typing import Callable, Dict, Optional

import numpy as np
import open3d as o3d
from PIL import Image as PILImage

from dataset_format import ExtractedFileNameInfo, SensorCategory
from messages import Image, PointCloud, PointField, RadarObject, RadarObjects, Vector3

log = logging.getLogger(__name__)

NUSCENES_LIDAR_COLUMNS = 5  # x, y, z, intensity, ring
LIDAR_FIELDS = ("x", "y", "z", "intensity")

RADAR_INT_FIELDS = ("dyn_prop", "is_quality_valid", "ambig_state", "x_rms", "y_rms",
                    "invalid_state", "pdh0", "vx_rms", "vy_rms")
RADAR_FLOAT_FIELDS = ("rcs", "vx", "vy", "vx_comp", "vy_comp")

Decoder = Callable[[str, Optional[ExtractedFileNameInfo]], Optional[object]]


def decode_camera(path: str, info: Optional[ExtractedFileNameInfo] = None) -> Optional[Image]:
    try:
        if not os.path.exists(path):
            log.warning(f"Source image not found: {path}")
            return None

        with PILImage.open(path) as img:
            if img.mode != 'RGB':
                img = img.convert('RGB')
            width, height = img.size
            data = img.tobytes()
        return Image(height=height, width=width, encoding="rgb8", step=width * 3, data=data)
    except Exception as e:
        log.warning(f"Failed to decode image {path}: {e}")
        return None


def _points_to_cloud(points: np.ndarray) -> PointCloud:
    points = np.ascontiguousarray(points, dtype=np.float32)
    fields = [PointField(name=name, offset=4 * i) for i, name in enumerate(LIDAR_FIELDS)]
    return PointCloud(point_count=int(points.shape[0]), point_step=4 * len(LIDAR_FIELDS),
                      fields=fields, data=points.tobytes())


def decode_lidar(path: str, info: Optional[ExtractedFileNameInfo] = None) -> Optional[PointCloud]:
    try:
        if not os.path.exists(path):
            log.warning(f"Source point cloud not found: {path}")
            return None

        if path.lower().endswith('.pcd'):
            pcd = o3d.io.read_point_cloud(path)
            xyz = np.asarray(pcd.points, dtype=np.float32)
            intensity = np.zeros((xyz.shape[0], 1), dtype=np.float32)
            return _points_to_cloud(np.hstack((xyz, intensity)))

        raw = np.fromfile(path, dtype=np.float32)
        if raw.size % NUSCENES_LIDAR_COLUMNS != 0:
            log.warning(f"Point cloud {path} has {raw.size} values, "
                        f"not a multiple of {NUSCENES_LIDAR_COLUMNS}")
            return None
        points = raw.reshape(-1, NUSCENES_LIDAR_COLUMNS)[:, :len(LIDAR_FIELDS)]
        return _points_to_cloud(points)
    except Exception as e:
        log.warning(f"Failed to decode point cloud {path}: {e}")
        return None


def _radar_field(pcd, name) -> Optional[np.ndarray]:
    if name not in pcd.point:
        return None
    return pcd.point[name].numpy().reshape(-1)


def decode_radar(path: str, info: Optional[ExtractedFileNameInfo] = None) -> Optional[RadarObjects]:
    try:
        if not os.path.exists(path):
            log.warning(f"Source radar file not found: {path}")
            return None

        # The tensor reader keeps custom PCD fields (dyn_prop, rcs, ...) by name.
        pcd = o3d.t.io.read_point_cloud(path)
        if pcd.is_empty():
            log.warning(f"Radar file {path} holds no points")
            return None

        positions = pcd.point["positions"].numpy()
        int_fields = {name: _radar_field(pcd, name) for name in RADAR_INT_FIELDS}
        float_fields = {name: _radar_field(pcd, name) for name in RADAR_FLOAT_FIELDS}

        objects = []
        for i, (x, y, z) in enumerate(positions):
            obj = RadarObject(pose=Vector3(float(x), float(y), float(z)))
            for name, values in int_fields.items():
                if values is not None:
                    setattr(obj, name, int(values[i]))
            for name, values in float_fields.items():
                if values is not None:
                    setattr(obj, name, float(values[i]))
            objects.append(obj)
        return RadarObjects(objects=objects)
    except Exception as e:
        log.warning(f"Failed to decode radar file {path}: {e}")
        return None


DECODERS: Dict[SensorCategory, Decoder] = {
    SensorCategory.CAMERA: decode_camera,
    SensorCategory.LIDAR: decode_lidar,
    SensorCategory.RADAR: decode_radar,
}
