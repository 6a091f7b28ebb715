"""Partition layout — which Redis stream holds which events."""

import zlib
from dataclasses import dataclass
from typing import Iterable, Optional

from ripple.config import Settings


def partition_for(key: str, partitions: int) -> int:
    """Deterministic partition index for a routing key.

    crc32 rather than hash(): Python's str hash is salted per process,
    and producers and consumers run in different processes.
    """
    return zlib.crc32(key.encode("utf-8")) % partitions


@dataclass(frozen=True)
class StreamLayout:
    """Naming scheme: <prefix>:<topic>:<partition>."""

    prefix: str = "ripple"
    partitions: int = 8

    @classmethod
    def from_settings(cls, settings: Settings) -> "StreamLayout":
        return cls(prefix=settings.bus_stream_prefix, partitions=settings.bus_partitions)

    def stream(self, topic: str, partition: int) -> str:
        return f"{self.prefix}:{topic}:{partition}"

    def stream_for(self, topic: str, key: str) -> str:
        return self.stream(topic, partition_for(key, self.partitions))

    def streams(self, topics: Iterable[str]) -> list[str]:
        return [
            self.stream(topic, p)
            for topic in topics
            for p in range(self.partitions)
        ]

    def topic_of(self, stream: str) -> Optional[str]:
        """Reverse of stream(): recover the topic name from a stream key."""
        if not stream.startswith(f"{self.prefix}:"):
            return None
        rest = stream[len(self.prefix) + 1:]
        topic, sep, partition = rest.rpartition(":")
        if not sep or not partition.isdigit():
            return None
        return topic
