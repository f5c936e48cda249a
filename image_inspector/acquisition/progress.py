"""
Image pull progress tracking.

The daemon reports pull progress as a stream of JSON messages. One thread
decodes the messages and emits byte deltas on a channel, a second thread
aggregates the deltas and periodically logs the cumulative amount.
"""

import json
import logging
import queue
import threading
import time
from typing import BinaryIO, Dict, Optional

from image_inspector.acquisition.pipe import drain, open_pipe

logger = logging.getLogger(__name__)

PULL_LOG_INTERVAL_SEC = 10

# Closes the channel
_CHANNEL_CLOSED = None


def decode_pull_messages(reader: BinaryIO, channel: queue.Queue):
    """
    Decode pull messages from reader and push downloaded byte deltas.

    The channel is closed once the reader reaches end of stream or a message
    cannot be decoded. Undecodable input is drained so the writing side never
    blocks on a full pipe.

    Args:
        reader: Binary stream of newline separated JSON messages
        channel: Queue receiving the number of new bytes per message
    """
    layers_bytes_downloaded: Dict[str, int] = {}
    try:
        for line in reader:
            line = line.strip()
            if not line:
                continue
            message = json.loads(line)
            if not isinstance(message, dict) or message.get("status") != "Downloading":
                continue
            current = (message.get("progressDetail") or {}).get("current", 0)
            layer_id = message.get("id", "")
            last = layers_bytes_downloaded.get(layer_id, 0)
            layers_bytes_downloaded[layer_id] = current
            channel.put(current - last)
    except json.JSONDecodeError as e:
        logger.error(f"Error decoding json: {e}")
        try:
            drain(reader)
        except (OSError, ValueError):
            pass
    except (OSError, ValueError) as e:
        # Reader closed under us
        logger.debug(f"Pull message stream closed: {e}")
    finally:
        channel.put(_CHANNEL_CLOSED)


def aggregate_bytes_and_report(
    channel: queue.Queue,
    interval: float = PULL_LOG_INTERVAL_SEC,
) -> int:
    """
    Sum byte deltas from the channel and log progress every interval.

    Returns once the channel is closed.

    Args:
        channel: Queue of byte deltas, closed by the decoder
        interval: Seconds between progress log lines

    Returns:
        Total number of bytes downloaded
    """
    bytes_downloaded = 0
    next_report = time.monotonic() + interval
    while True:
        try:
            delta = channel.get(timeout=max(0.0, next_report - time.monotonic()))
        except queue.Empty:
            logger.info(f"Downloading Image ({bytes_downloaded // 1024}Kb downloaded)")
            next_report = time.monotonic() + interval
            continue

        if delta is _CHANNEL_CLOSED:
            logger.info(f"Finished Downloading Image ({bytes_downloaded // 1024}Kb downloaded)")
            return bytes_downloaded
        bytes_downloaded += delta


class PullProgressTracker:
    """
    Pipe plus decoder and aggregator threads for one image pull.

    Usage:
        with PullProgressTracker() as tracker:
            for message in pull_stream:
                tracker.write(message)
    """

    def __init__(self, interval: float = PULL_LOG_INTERVAL_SEC):
        self.interval = interval
        self.total_bytes: Optional[int] = None
        self._started = False
        self._reader, self._writer = open_pipe()
        self._channel: queue.Queue = queue.Queue()
        self._decoder = threading.Thread(
            target=self._decode, name="pull-progress-decoder", daemon=True
        )
        self._aggregator = threading.Thread(
            target=self._aggregate, name="pull-progress-aggregator", daemon=True
        )

    def start(self) -> "PullProgressTracker":
        self._aggregator.start()
        self._decoder.start()
        self._started = True
        return self

    def write(self, data: bytes):
        self._writer.write(data)

    def close(self) -> Optional[int]:
        """Close the write end and wait for both threads to finish."""
        if not self._writer.closed:
            self._writer.close()
        if self._started:
            self._decoder.join()
            self._aggregator.join()
        else:
            self._reader.close()
        return self.total_bytes

    def _decode(self):
        try:
            decode_pull_messages(self._reader, self._channel)
        finally:
            self._reader.close()

    def _aggregate(self):
        self.total_bytes = aggregate_bytes_and_report(self._channel, self.interval)

    def __enter__(self) -> "PullProgressTracker":
        return self.start()

    def __exit__(self, exc_type, exc, tb):
        self.close()
