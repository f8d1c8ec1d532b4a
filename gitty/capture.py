"""
Speech capture for one listening cycle.

A SpeechCaptureSession owns the microphone and a recognizer pipeline for the
length of a single utterance. Fragments from the recognizer are space-joined;
the session ends once no fragment (or speech activity) has been seen for the
configured silence period, and every resource is released exactly once.
"""

from __future__ import annotations

import asyncio
import enum
import json
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple

import numpy as np

from gitty.audio import MicrophoneStream, SAMPLE_RATE, rms_level
from gitty.errors import MicrophonePermissionError
from gitty.timers import QuietPeriodTimer

# STT deps
try:
    from faster_whisper import WhisperModel
    WHISPER_AVAILABLE = True
except ImportError:
    WhisperModel = None
    WHISPER_AVAILABLE = False

DEFAULT_CAPTURE = {
    "silence_ms": 2000,
    "initial_timeout_ms": 5000,
    "max_duration_s": 30.0,
    "vad_threshold": 0.02,
    "fragment_pause_ms": 400,
    "min_speech_ms": 150,
    "block_size": 512,
}

HALLUCINATIONS = [
    "thanks for watching", "thank you for watching",
    "please subscribe", "like and subscribe",
    "see you next time", "music playing", "[music]",
]


class Transcriber:
    """faster-whisper wrapper; CUDA first, CPU int8 fallback."""

    def __init__(self, cfg: Dict[str, Any], logger: logging.Logger):
        self.logger = logger
        self._whisper = None

        stt_cfg = cfg.get("stt", {})
        self.model_tag = stt_cfg.get("model", "small.en")
        self.device = stt_cfg.get("device", "cuda")
        self.compute_type = stt_cfg.get("compute_type", "int8_float16")
        self.beam_size = stt_cfg.get("beam_size", 1)
        self.language = stt_cfg.get("language", "en")
        # Biases recognition toward git vocabulary
        self.initial_prompt = stt_cfg.get(
            "initial_prompt", "git status, git diff, commit, branch, stash, rebase, push, pull"
        )

        if WHISPER_AVAILABLE and self.device == "cuda":
            try:
                self._whisper = WhisperModel(self.model_tag, device="cuda", compute_type=self.compute_type)
                self.logger.info("stt_ready %s", json.dumps({
                    "engine": "whisper-cuda", "model": self.model_tag, "compute_type": self.compute_type
                }))
            except Exception as e:
                self.logger.warning("stt_cuda_failed %s", json.dumps({"error": str(e)}))
                self._init_cpu_whisper()
        else:
            self._init_cpu_whisper()

    def _init_cpu_whisper(self):
        """Fallback to CPU Whisper."""
        if not WHISPER_AVAILABLE:
            self.logger.warning("stt_unavailable %s", json.dumps({"reason": "faster-whisper not installed"}))
            return
        try:
            self._whisper = WhisperModel(self.model_tag, device="cpu", compute_type="int8")
            self.logger.info("stt_ready %s", json.dumps({"engine": "whisper-cpu", "model": self.model_tag}))
        except Exception as e:
            self.logger.warning("stt_cpu_failed %s", json.dumps({"error": str(e)}))

    @property
    def ready(self) -> bool:
        return self._whisper is not None

    def transcribe_audio(self, audio: np.ndarray) -> str:
        """Transcribe an int16 buffer. Runs in a worker thread."""
        if audio is None or not self._whisper:
            return ""
        audio_float = audio.astype(np.float32) / 32768.0
        segments, info = self._whisper.transcribe(
            audio_float,
            beam_size=self.beam_size,
            language=self.language,
            initial_prompt=self.initial_prompt,
            vad_filter=False,
        )
        text = " ".join(seg.text.strip() for seg in segments).strip()
        self.logger.info("stt_done %s", json.dumps({
            "len": len(text), "lang": info.language if info else self.language
        }))
        return text


def is_hallucination(text: str) -> bool:
    """Filter stock Whisper hallucinations on near-silent audio."""
    lower = (text or "").strip().lower()
    if not lower:
        return True
    return any(phrase in lower for phrase in HALLUCINATIONS)


class WhisperRecognizer:
    """Pseudo-streaming recognition: RMS VAD bursts -> whisper fragments.

    Every voiced block reports a partial (speech is ongoing); once a burst is
    followed by `fragment_pause_ms` of quiet, the burst is transcribed and
    reported as a final fragment.
    """

    def __init__(self, cfg: Dict[str, Any], logger: logging.Logger,
                 transcriber: Optional[Transcriber] = None):
        cap = dict(DEFAULT_CAPTURE)
        cap.update(cfg.get("capture", {}) or {})
        self.logger = logger
        self.vad_threshold = float(cap["vad_threshold"])
        self.fragment_pause_ms = int(cap["fragment_pause_ms"])
        self.min_speech_ms = int(cap["min_speech_ms"])
        self.transcriber = transcriber or Transcriber(cfg, logger)
        self._stopped = False

    def stop(self) -> None:
        self._stopped = True

    async def run(self, mic: MicrophoneStream,
                  on_partial: Callable[[], None],
                  on_final: Callable[[str], None],
                  on_busy: Optional[Callable[[bool], None]] = None) -> None:
        """Feed fragments to the callbacks until the mic closes or stop().

        `on_busy(True)` fires before a fragment is handed to whisper and
        `on_busy(False)` once it returns, so callers can hold endpointing.
        """
        self._stopped = False
        loop = asyncio.get_running_loop()
        rate = mic.sample_rate
        pause_samples = int(self.fragment_pause_ms * rate / 1000)
        min_speech_samples = int(self.min_speech_ms * rate / 1000)

        burst: List[np.ndarray] = []
        voiced = 0
        quiet = 0
        while not self._stopped:
            block = await mic.read()
            if block is None:
                break
            if rms_level(block) >= self.vad_threshold:
                burst.append(block)
                voiced += len(block)
                quiet = 0
                on_partial()
                continue
            if not burst:
                continue

            burst.append(block)
            quiet += len(block)
            if quiet < pause_samples:
                continue

            audio = np.concatenate(burst)
            enough = voiced >= min_speech_samples
            burst, voiced, quiet = [], 0, 0
            if not enough:
                continue
            on_partial()
            if on_busy:
                on_busy(True)
            try:
                text = await loop.run_in_executor(None, self.transcriber.transcribe_audio, audio)
            finally:
                if on_busy:
                    on_busy(False)
            if self._stopped:
                break
            if is_hallucination(text):
                self.logger.warning("whisper_hallucination_filtered %s", json.dumps({"text": text}))
                continue
            on_final(text)


class CaptureState(enum.Enum):
    IDLE = "idle"
    LISTENING = "listening"
    FINISHED = "finished"


@dataclass(frozen=True)
class CaptureOutcome:
    transcript: str
    fragments: Tuple[str, ...] = ()

    @property
    def no_speech(self) -> bool:
        return not self.transcript


class SpeechCaptureSession:
    def __init__(self, cfg: Dict[str, Any], logger: logging.Logger, recognizer: Any,
                 mic_factory: Optional[Callable[[], MicrophoneStream]] = None,
                 scheduler: Optional[Any] = None):
        cap = dict(DEFAULT_CAPTURE)
        cap.update(cfg.get("capture", {}) or {})
        self.logger = logger
        self.recognizer = recognizer
        self.silence_ms = int(cap["silence_ms"])
        self.initial_timeout_ms = int(cap["initial_timeout_ms"])
        self.max_duration_s = float(cap["max_duration_s"])
        block_size = int(cap["block_size"])
        self._mic_factory = mic_factory or (
            lambda: MicrophoneStream(logger, owner="capture", sample_rate=SAMPLE_RATE, block_size=block_size)
        )
        self._scheduler = scheduler
        self._timer = QuietPeriodTimer(self.silence_ms, self._finish, scheduler)

        self.state = CaptureState.IDLE
        self.fragments: List[str] = []
        self.release_count = 0
        self.transcribing = False
        self._mic: Optional[MicrophoneStream] = None
        self._pipeline: Optional[asyncio.Task] = None
        self._max_handle = None
        self._done: Optional[asyncio.Future] = None

    @property
    def transcript(self) -> str:
        return " ".join(self.fragments)

    async def run(self) -> Optional[CaptureOutcome]:
        """Listen until silence; None if this session already ran."""
        if self.state is not CaptureState.IDLE:
            self.logger.info("capture_ignored %s", json.dumps({"state": self.state.value}))
            return None
        self.state = CaptureState.LISTENING
        loop = asyncio.get_running_loop()
        self._done = loop.create_future()

        self._mic = self._mic_factory()
        try:
            self._mic.open()
        except MicrophonePermissionError:
            self._release()
            raise

        self.logger.info("capture_begin %s", json.dumps({
            "silence_ms": self.silence_ms, "initial_timeout_ms": self.initial_timeout_ms
        }))
        try:
            self._pipeline = asyncio.ensure_future(
                self.recognizer.run(self._mic, self.on_partial, self.on_final, self.on_busy)
            )
            self._pipeline.add_done_callback(self._on_pipeline_done)
            self._timer.reset(self.initial_timeout_ms)
            scheduler = self._scheduler or loop
            self._max_handle = scheduler.call_later(self.max_duration_s, self._finish)
            outcome = await self._done
        finally:
            self._release()

        self.logger.info("capture_end %s", json.dumps({
            "fragments": len(outcome.fragments), "chars": len(outcome.transcript),
            "no_speech": outcome.no_speech,
        }))
        return outcome

    def on_partial(self, text: str = "") -> None:
        if self.state is not CaptureState.LISTENING:
            return
        if not self.transcribing:
            self._timer.reset(self.silence_ms)

    def on_busy(self, busy: bool) -> None:
        """Silence endpointing is held while a fragment is being transcribed."""
        if self.state is not CaptureState.LISTENING:
            return
        self.transcribing = busy
        if busy:
            self._timer.cancel()
        else:
            self._timer.reset(self.silence_ms)

    def on_final(self, text: str) -> None:
        if self.state is not CaptureState.LISTENING:
            return
        text = (text or "").strip()
        if text:
            self.fragments.append(text)
            self.logger.debug("capture_fragment %s", json.dumps({"n": len(self.fragments), "text": text}))
        self._timer.reset(self.silence_ms)

    def stop(self) -> None:
        """End the session now with whatever has been accumulated."""
        self._finish()

    def _finish(self) -> None:
        if self._done is None or self._done.done():
            return
        self._done.set_result(CaptureOutcome(self.transcript, tuple(self.fragments)))

    def _on_pipeline_done(self, task: asyncio.Task) -> None:
        if self._done is None or self._done.done() or task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            self.logger.error("capture_pipeline_failed %s", json.dumps({"error": str(exc)}))
            self._done.set_exception(exc)
        else:
            # Recognizer ran out of audio (device closed underneath us)
            self._finish()

    def _release(self) -> None:
        if self.state is CaptureState.FINISHED:
            return
        self.state = CaptureState.FINISHED
        self._timer.cancel()
        if self._max_handle is not None:
            self._max_handle.cancel()
            self._max_handle = None
        try:
            self.recognizer.stop()
        finally:
            if self._pipeline is not None and not self._pipeline.done():
                self._pipeline.cancel()
            if self._mic is not None:
                self._mic.close()
        self.release_count += 1
