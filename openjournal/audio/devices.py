"""
Local audio devices: microphone capture and assistant playback.

Capture runs on a PortAudio thread; chunks are marshalled onto the asyncio
loop with ``call_soon_threadsafe``. Playback prefers a streaming path
(decode mp3 with pydub, write float32 blocks to a sounddevice OutputStream)
and falls back to an external player process when decoding or the output
device fails.
"""

import asyncio
import io
import os
import tempfile
import threading
from contextlib import suppress
from typing import Callable, List, Optional, Tuple, Union

import numpy as np
import structlog

from openjournal.errors import ResourceError

logger = structlog.get_logger(__name__)

MIC_UNAVAILABLE_MESSAGE = "Microphone access denied or unavailable"

ChunkCallback = Callable[[np.ndarray], None]
DeviceRef = Optional[Union[int, str]]


class SoundDeviceMicrophone:
    """Mono float32 capture at the device's native rate."""

    def __init__(self, block_size: int = 4096, device: DeviceRef = None):
        self.block_size = block_size
        self.device = device
        self.sample_rate: int = 0
        self._stream = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._on_chunk: Optional[ChunkCallback] = None

    async def start(self, on_chunk: ChunkCallback) -> None:
        import sounddevice as sd

        self._loop = asyncio.get_running_loop()
        self._on_chunk = on_chunk

        def _open():
            stream = sd.InputStream(
                channels=1,
                dtype="float32",
                blocksize=self.block_size,
                device=self.device,
                callback=self._callback,
            )
            stream.start()
            return stream

        try:
            self._stream = await self._loop.run_in_executor(None, _open)
        except Exception as exc:
            logger.error("Microphone open failed", error=str(exc), device=self.device)
            raise ResourceError(MIC_UNAVAILABLE_MESSAGE) from exc
        self.sample_rate = int(self._stream.samplerate)
        logger.debug("Microphone started", sample_rate=self.sample_rate, block_size=self.block_size)

    def _callback(self, indata, frames, time_info, status) -> None:
        if status:
            logger.debug("Microphone status", status=str(status))
        loop, on_chunk = self._loop, self._on_chunk
        if loop is None or on_chunk is None:
            return
        chunk = np.array(indata[:, 0], dtype=np.float32, copy=True)
        with suppress(RuntimeError):  # loop already closed during shutdown
            loop.call_soon_threadsafe(on_chunk, chunk)

    def close(self) -> None:
        stream, self._stream = self._stream, None
        self._on_chunk = None
        if stream is None:
            return
        try:
            stream.stop()
            stream.close()
        except Exception:
            logger.debug("Microphone close failed", exc_info=True)


def decode_mp3(audio: bytes) -> Tuple[np.ndarray, int]:
    """Decode mp3 bytes into mono float32 samples using pydub (ffmpeg backed)."""
    from pydub import AudioSegment

    seg = AudioSegment.from_file(io.BytesIO(audio), format="mp3")
    samples = np.array(seg.get_array_of_samples(), dtype=np.float32)
    if seg.channels > 1:
        samples = samples.reshape(-1, seg.channels).mean(axis=1)
    maxv = float(1 << (8 * seg.sample_width - 1))
    return np.clip(samples / maxv, -1.0, 1.0).astype(np.float32), int(seg.frame_rate)


class SoundDevicePlayback:
    """Playback context for one session.

    ``play`` completes when the audio has finished or ``stop`` was called.
    It raises ResourceError only when both playback paths fail.
    """

    def __init__(
        self,
        fallback_player: Optional[List[str]] = None,
        device: DeviceRef = None,
        block_size: int = 1024,
    ):
        self.fallback_player = list(fallback_player or ["ffplay", "-nodisp", "-autoexit", "-loglevel", "quiet"])
        self.device = device
        self.block_size = block_size
        self._stop_event: Optional[threading.Event] = None
        self._proc: Optional[asyncio.subprocess.Process] = None
        self._closed = False

    async def play(self, audio: bytes, fmt: str = "mp3") -> None:
        if self._closed:
            raise ResourceError("Playback context is closed")

        stop_event = threading.Event()
        self._stop_event = stop_event
        try:
            try:
                await self._play_streaming(audio, stop_event)
                return
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                if stop_event.is_set():
                    return
                logger.warning("Streaming playback failed; using fallback player", error=str(exc), format=fmt)

            try:
                await self._play_fallback(audio, fmt, stop_event)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.error("Fallback playback failed", error=str(exc), player=self.fallback_player[0])
                raise ResourceError(f"Audio playback failed: {exc}") from exc
        except asyncio.CancelledError:
            self.stop()
            raise
        finally:
            if self._stop_event is stop_event:
                self._stop_event = None

    async def _play_streaming(self, audio: bytes, stop_event: threading.Event) -> None:
        loop = asyncio.get_running_loop()
        samples, rate = await loop.run_in_executor(None, decode_mp3, audio)
        await loop.run_in_executor(None, self._write_blocking, samples, rate, stop_event)

    def _write_blocking(self, samples: np.ndarray, rate: int, stop_event: threading.Event) -> None:
        import sounddevice as sd

        if samples.size == 0:
            return
        with sd.OutputStream(samplerate=rate, channels=1, dtype="float32", device=self.device) as stream:
            idx = 0
            while idx < samples.size and not stop_event.is_set():
                chunk = samples[idx: idx + self.block_size]
                stream.write(chunk.reshape(-1, 1))
                idx += self.block_size

    async def _play_fallback(self, audio: bytes, fmt: str, stop_event: threading.Event) -> None:
        fd, path = tempfile.mkstemp(prefix="openjournal-", suffix=f".{fmt or 'mp3'}")
        try:
            with os.fdopen(fd, "wb") as fh:
                fh.write(audio)
            if stop_event.is_set():
                return
            proc = await asyncio.create_subprocess_exec(
                *self.fallback_player,
                path,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.DEVNULL,
            )
            self._proc = proc
            try:
                code = await proc.wait()
            finally:
                self._proc = None
            if code != 0 and not stop_event.is_set():
                raise RuntimeError(f"{self.fallback_player[0]} exited with status {code}")
        finally:
            with suppress(OSError):
                os.unlink(path)

    def stop(self) -> None:
        """Stop both playback paths immediately."""
        if self._stop_event is not None:
            self._stop_event.set()
        proc = self._proc
        if proc is not None and proc.returncode is None:
            with suppress(ProcessLookupError):
                proc.terminate()

    def close(self) -> None:
        self.stop()
        self._closed = True
