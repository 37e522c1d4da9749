import os
import re
import json
import logging

log = logging.getLogger(__name__)

SCENE_NUMBER_PATTERN = re.compile(r'\d+$')


def load_json_table(file_path, required=True):
    """Read one metadata table (a JSON array of records).

    Returns None for a missing optional table. A missing required table raises
    FileNotFoundError; unreadable JSON or a non-list document raises ValueError.
    """
    if not os.path.exists(file_path):
        if required:
            raise FileNotFoundError(f"Missing required metadata table: {file_path}")
        log.info(f"Optional table {os.path.basename(file_path)} not found, using empty table")
        return None

    with open(file_path, 'r') as f:
        data = json.load(f)

    if not isinstance(data, list):
        raise ValueError(f"{os.path.basename(file_path)} is not a list of records")

    log.debug(f"Loaded {len(data)} records from {os.path.basename(file_path)}")
    return data


def parse_scene_id(scene_name, fallback):
    match = SCENE_NUMBER_PATTERN.search(scene_name or "")
    if match:
        return int(match.group(0))
    return fallback


def ensure_directory(directory_path):
    try:
        os.makedirs(directory_path, exist_ok=True)
        log.debug(f"Ensured directory exists: {directory_path}")
    except Exception as e:
        log.error(f"Could not create directory {directory_path}: {e}")
        raise


def remove_if_exists(file_path):
    if os.path.exists(file_path):
        os.remove(file_path)
        log.debug(f"Removed existing file {file_path}")
