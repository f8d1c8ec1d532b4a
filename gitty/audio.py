# ~/Projects/Gitty/gitty/audio.py
# Exclusive microphone handle: PortAudio callback thread -> asyncio queue.

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Callable, Optional

import numpy as np

from gitty.errors import MicrophonePermissionError

# Audio deps with graceful fallback (PortAudio may be missing entirely)
try:
    import sounddevice as sd
    AUDIO_BACKEND = "sounddevice"
except (ImportError, OSError):
    sd = None
    AUDIO_BACKEND = None

SAMPLE_RATE = 16000
CHANNELS = 1


def rms_level(block: np.ndarray) -> float:
    """RMS of an int16 block, normalised to [0, 1]."""
    if block is None or len(block) == 0:
        return 0.0
    return float(np.sqrt(np.mean(block.astype(np.float32) ** 2)) / 32768.0)


def _default_stream_factory(**kwargs: Any):
    if sd is None:
        raise RuntimeError("sounddevice/PortAudio not available")
    return sd.InputStream(**kwargs)


class MicrophoneStream:
    """One open input stream, owned by exactly one consumer at a time.

    Blocks arrive on a PortAudio thread and are handed to the event loop with
    call_soon_threadsafe. read() returns None once the stream is closed.
    """

    def __init__(self, logger: logging.Logger, owner: str,
                 sample_rate: int = SAMPLE_RATE, block_size: int = 512,
                 max_queue: int = 256,
                 stream_factory: Optional[Callable[..., Any]] = None):
        self.logger = logger
        self.owner = owner
        self.sample_rate = sample_rate
        self.block_size = block_size
        self.max_queue = max_queue
        self._stream_factory = stream_factory or _default_stream_factory
        self._stream = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._queue: Optional[asyncio.Queue] = None
        self._closed = False
        self.dropped_blocks = 0

    @property
    def is_open(self) -> bool:
        return self._stream is not None and not self._closed

    def open(self) -> None:
        """Open and start the device; raises MicrophonePermissionError."""
        if self._stream is not None:
            return
        self._loop = asyncio.get_running_loop()
        self._queue = asyncio.Queue(maxsize=self.max_queue)
        self._closed = False
        try:
            stream = self._stream_factory(
                samplerate=self.sample_rate,
                channels=CHANNELS,
                dtype="int16",
                blocksize=self.block_size,
                callback=self._callback,
            )
            stream.start()
        except Exception as e:
            self._closed = True
            self.logger.error("mic_open_failed %s", json.dumps({"owner": self.owner, "error": str(e)}))
            raise MicrophonePermissionError(f"Microphone unavailable: {e}") from e

        self._stream = stream
        self.logger.info("mic_open %s", json.dumps({
            "owner": self.owner, "rate": self.sample_rate, "block": self.block_size
        }))

    def _callback(self, indata, frames, time_info, status) -> None:
        # PortAudio thread
        if self._closed or self._loop is None:
            return
        if status:
            self.logger.debug("mic_status %s", json.dumps({"owner": self.owner, "status": str(status)}))
        block = np.array(indata, dtype=np.int16, copy=True).reshape(-1)
        try:
            self._loop.call_soon_threadsafe(self._push, block)
        except RuntimeError:
            # Loop already closed during shutdown
            pass

    def _push(self, block: Optional[np.ndarray]) -> None:
        if self._queue is None:
            return
        if block is not None and self._closed:
            return
        if self._queue.full():
            self._queue.get_nowait()
            self.dropped_blocks += 1
        self._queue.put_nowait(block)

    async def read(self) -> Optional[np.ndarray]:
        if self._queue is None or (self._closed and self._queue.empty()):
            return None
        block = await self._queue.get()
        if block is None:
            return None
        return block

    def close(self) -> None:
        """Stop the device synchronously. Safe to call more than once."""
        if self._closed and self._stream is None:
            return
        self._closed = True
        stream, self._stream = self._stream, None
        if stream is not None:
            try:
                stream.stop()
                stream.close()
            except Exception as e:
                self.logger.warning("mic_close_failed %s", json.dumps({"owner": self.owner, "error": str(e)}))
            self.logger.info("mic_close %s", json.dumps({
                "owner": self.owner, "dropped_blocks": self.dropped_blocks
            }))
        # Wake any reader blocked in read()
        self._push(None)
