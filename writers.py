import os
import json
import logging
from abc import ABC, abstractmethod

from mcap.writer import Writer

from messages import to_json_dict
from utils import ensure_directory, remove_if_exists

log = logging.getLogger(__name__)

MCAP_PROFILE = ""
MCAP_LIBRARY = "nuscenes2mcap"
SCHEMA_ENCODING = "jsonschema"
MESSAGE_ENCODING = "json"


class BaseLogWriter(ABC):
    """One output log. Only the owning scene's thread writes to it."""

    @abstractmethod
    def open(self, path: str):
        pass

    @abstractmethod
    def write(self, topic: str, stamp_us: int, message):
        pass

    @abstractmethod
    def close(self):
        pass

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_value, traceback):
        self.close()


class McapLogWriter(BaseLogWriter):

    def __init__(self):
        self._stream = None
        self._writer = None
        self._path = None
        self._schema_ids = {}
        self._channel_ids = {}
        self.message_count = 0

    def open(self, path: str):
        self._path = os.path.abspath(path)
        ensure_directory(os.path.dirname(self._path))
        remove_if_exists(self._path)

        self._stream = open(self._path, 'wb')
        self._writer = Writer(self._stream)
        self._writer.start(profile=MCAP_PROFILE, library=MCAP_LIBRARY)
        log.debug(f"Opened log {self._path}")
        return self

    def _schema_id(self, message_type) -> int:
        schema_id = self._schema_ids.get(message_type)
        if schema_id is None:
            schema_id = self._writer.register_schema(
                name=message_type.SCHEMA_NAME,
                encoding=SCHEMA_ENCODING,
                data=json.dumps(message_type.SCHEMA).encode(),
            )
            self._schema_ids[message_type] = schema_id
        return schema_id

    def _channel_id(self, topic: str, message_type) -> int:
        key = (topic, message_type)
        channel_id = self._channel_ids.get(key)
        if channel_id is None:
            channel_id = self._writer.register_channel(
                topic=topic,
                message_encoding=MESSAGE_ENCODING,
                schema_id=self._schema_id(message_type),
            )
            self._channel_ids[key] = channel_id
        return channel_id

    def write(self, topic: str, stamp_us: int, message):
        if self._writer is None:
            raise OSError(f"Log is not open, cannot write to topic {topic}")

        channel_id = self._channel_id(topic, type(message))
        stamp_ns = int(stamp_us) * 1000
        self._writer.add_message(
            channel_id=channel_id,
            log_time=stamp_ns,
            data=json.dumps(to_json_dict(message)).encode(),
            publish_time=stamp_ns,
        )
        self.message_count += 1

    def close(self):
        if self._writer is None:
            return
        try:
            self._writer.finish()
        finally:
            self._stream.close()
            self._writer = None
            self._stream = None
        log.debug(f"Closed log {self._path} with {self.message_count} messages")
