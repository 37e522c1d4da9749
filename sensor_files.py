import os
import re
import logging
from typing import List, Optional, Tuple

from dataset_format import ExtractedFileNameInfo, SensorCategory

log = logging.getLogger(__name__)

# Checked in order, first match wins.
CATEGORY_MARKERS = (
    ("CAM", SensorCategory.CAMERA),
    ("RADAR", SensorCategory.RADAR),
    ("LIDAR", SensorCategory.LIDAR),
)

SAMPLE_SET_ROOTS = ("samples", "sweeps")

FILE_NAME_PATTERN = re.compile(r'^(?P<log>.+?)__(?P<channel>[A-Z0-9_]+)__(?P<stamp>\d+)(?P<ext>(\.\w+)*)$')


def _match_category(name: str) -> Optional[SensorCategory]:
    upper_name = name.upper()
    for marker, category in CATEGORY_MARKERS:
        if marker in upper_name:
            return category
    return None


def classify_directory(name: str) -> Optional[SensorCategory]:
    category = _match_category(os.path.basename(os.path.normpath(name)))
    if category is None:
        log.info(f"Skipping {name}: not a camera, radar or lidar directory")
    return category


def classify_file(file_name: str) -> Optional[SensorCategory]:
    category = _match_category(file_name)
    if category is None:
        log.warning(f"Unknown file {file_name}")
    return category


def extract_file_info(file_name: str) -> Optional[ExtractedFileNameInfo]:
    """Parse ``<log>__<CHANNEL>__<stamp_us>.<ext>`` file names."""
    match = FILE_NAME_PATTERN.match(os.path.basename(file_name))
    if not match:
        log.warning(f"Skipping {file_name}: file name does not carry a capture timestamp")
        return None
    return ExtractedFileNameInfo(
        log_name=match.group("log"),
        channel=match.group("channel"),
        stamp_us=int(match.group("stamp")),
        extension=match.group("ext"),
    )


def sample_sets_in_directory(dataset_root: str) -> List[Tuple[str, SensorCategory, str]]:
    """Return ``(directory name, category, path)`` for every sensor directory in the dataset."""
    candidates = [dataset_root] + [os.path.join(dataset_root, name) for name in SAMPLE_SET_ROOTS]
    sets = []
    for root in candidates:
        if not os.path.isdir(root):
            continue
        for item_name in sorted(os.listdir(root)):
            path = os.path.join(root, item_name)
            if not os.path.isdir(path) or item_name in SAMPLE_SET_ROOTS:
                continue
            category = classify_directory(item_name)
            if category is not None:
                sets.append((item_name, category, path))
    return sets
