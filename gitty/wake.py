# ~/Projects/Gitty/gitty/wake.py
# Wake-word detection with OpenWakeWord over an exclusively owned microphone.

from __future__ import annotations

import asyncio
import enum
import json
import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import numpy as np

from gitty.audio import MicrophoneStream, SAMPLE_RATE
from gitty.errors import WakeWordAssetError, WakeWordError, WakeWordNotReady
from gitty.timers import DebounceWindow

# Wake word deps
try:
    from openwakeword.model import Model as OWWModel
    OWW_AVAILABLE = True
except ImportError:
    OWWModel = None
    OWW_AVAILABLE = False

FRAME_SAMPLES = 1280  # 80 ms at 16 kHz, the OWW feature hop

DEFAULT_WAKE = {
    "enabled": True,
    "keyword": "hey_gitty",
    "model_dir": None,
    "keyword_model": None,
    "sensitivity": 0.5,
    "debounce_ms": 2000,
    "inference_framework": "onnx",
}


class WakeState(enum.Enum):
    IDLE = "idle"
    INITIALIZING = "initializing"
    ARMED = "armed"
    DISABLED = "disabled"


@dataclass(frozen=True)
class WakeWordDetection:
    keyword: str
    timestamp: int  # epoch ms


def _default_model_factory(keyword_model: Path, model_dir: Path, framework: str):
    if not OWW_AVAILABLE:
        raise WakeWordAssetError("openwakeword is not installed")
    return OWWModel(
        wakeword_models=[str(keyword_model)],
        inference_framework=framework,
        melspec_model_path=str(model_dir / f"melspectrogram.{framework}"),
        embedding_model_path=str(model_dir / f"embedding_model.{framework}"),
    )


class WakeWordDetector:
    """Single wake-word detector; VoiceLoop owns the one instance.

    Lifecycle: initialize() -> arm()/disarm() any number of times -> destroy().
    """

    def __init__(self, cfg: Dict[str, Any], logger: logging.Logger,
                 model_factory: Optional[Callable[..., Any]] = None,
                 mic_factory: Optional[Callable[[], MicrophoneStream]] = None,
                 clock: Optional[Callable[[], int]] = None):
        self.cfg = dict(DEFAULT_WAKE)
        self.cfg.update(cfg.get("wake", {}) or {})
        self.logger = logger
        self.state = WakeState.IDLE
        self.keyword = self.cfg["keyword"]
        self.sensitivity = float(self.cfg["sensitivity"])
        self.last_error: Optional[str] = None

        self._model_factory = model_factory or _default_model_factory
        self._mic_factory = mic_factory or (
            lambda: MicrophoneStream(logger, owner="wake", sample_rate=SAMPLE_RATE, block_size=FRAME_SAMPLES)
        )
        debounce_kwargs = {"clock": clock} if clock else {}
        self.debounce = DebounceWindow(int(self.cfg["debounce_ms"]), **debounce_kwargs)

        self.model = None
        self._init_task: Optional[asyncio.Future] = None
        self._mic: Optional[MicrophoneStream] = None
        self._consumer: Optional[asyncio.Task] = None
        self._callbacks: List[Callable[[WakeWordDetection], None]] = []
        self.setup_calls = 0

    # ---------- lifecycle ----------

    @property
    def is_armed(self) -> bool:
        return self.state is WakeState.ARMED

    async def initialize(self, config: Optional[Dict[str, Any]] = None) -> None:
        """Memoized: concurrent callers share the one in-flight setup."""
        if self._init_task is None:
            self._init_task = asyncio.ensure_future(self._initialize(config))
        await asyncio.shield(self._init_task)

    async def _initialize(self, config: Optional[Dict[str, Any]]) -> None:
        if self.model is not None:
            return
        if config:
            self.cfg.update(config)
            self.keyword = self.cfg["keyword"]
            self.sensitivity = float(self.cfg["sensitivity"])
            self.debounce.window_ms = int(self.cfg["debounce_ms"])

        self.state = WakeState.INITIALIZING
        self.setup_calls += 1
        try:
            model_dir, keyword_model = self._check_assets()
            loop = asyncio.get_running_loop()
            model = await loop.run_in_executor(
                None, self._model_factory, keyword_model, model_dir, self.cfg["inference_framework"]
            )
            if not getattr(model, "models", None):
                raise WakeWordAssetError("OWW initialized but no models loaded")
        except WakeWordError as e:
            self._disable(str(e))
            raise
        except Exception as e:
            self._disable(str(e))
            raise WakeWordAssetError(f"Wake word initialization failed: {e}") from e

        self.model = model
        names = list(model.models.keys())
        if self.keyword not in names:
            self.keyword = names[0]
        self.state = WakeState.IDLE
        self.logger.info("oww_initialized %s", json.dumps({
            "keyword": self.keyword,
            "models": names,
            "sensitivity": self.sensitivity,
            "debounce_ms": self.debounce.window_ms,
        }))

    def _check_assets(self):
        if not self.cfg.get("enabled", True):
            raise WakeWordAssetError("Wake word disabled in configuration")
        model_dir = self.cfg.get("model_dir")
        keyword_model = self.cfg.get("keyword_model")
        if not model_dir or not keyword_model:
            raise WakeWordAssetError("Wake word model_dir and keyword_model must be configured")

        model_dir = Path(model_dir).expanduser()
        keyword_model = Path(keyword_model).expanduser()
        framework = self.cfg["inference_framework"]
        required = [
            (model_dir / f"melspectrogram.{framework}", "melspectrogram model"),
            (model_dir / f"embedding_model.{framework}", "embedding model"),
            (keyword_model, "keyword model"),
        ]
        for path, name in required:
            if not path.exists():
                raise WakeWordAssetError(f"Missing {name} at {path}")
        return model_dir, keyword_model

    def _disable(self, reason: str) -> None:
        self.state = WakeState.DISABLED
        self.last_error = reason
        self.logger.warning("oww_init_failed %s", json.dumps({"error": reason}))

    async def arm(self) -> None:
        if self.model is None or self.state in (WakeState.DISABLED, WakeState.INITIALIZING):
            raise WakeWordNotReady("Wake word detector not initialized. Call initialize() first.")
        if self.state is WakeState.ARMED:
            return

        mic = self._mic_factory()
        mic.open()
        self._mic = mic
        self._reset_model()
        self.state = WakeState.ARMED
        self._consumer = asyncio.ensure_future(self._consume(mic))
        self.logger.info("wake_armed %s", json.dumps({"keyword": self.keyword}))

    def disarm(self) -> None:
        """Synchronously release the microphone. No-op unless armed."""
        if self.state is not WakeState.ARMED:
            return
        self.state = WakeState.IDLE
        mic, self._mic = self._mic, None
        consumer, self._consumer = self._consumer, None
        if mic is not None:
            mic.close()
        if consumer is not None:
            consumer.cancel()
        self.logger.info("wake_disarmed %s", json.dumps({"keyword": self.keyword}))

    async def destroy(self) -> None:
        self.disarm()
        if self._init_task is not None and not self._init_task.done():
            self._init_task.cancel()
        self.model = None
        self._init_task = None
        self._callbacks = []
        self.debounce.clear()
        self.state = WakeState.IDLE
        self.logger.info("wake_destroyed %s", json.dumps({}))

    # ---------- detection ----------

    def on_detection(self, callback: Callable[[WakeWordDetection], None]) -> Callable[[], None]:
        self._callbacks.append(callback)

        def unsubscribe() -> None:
            if callback in self._callbacks:
                self._callbacks.remove(callback)

        return unsubscribe

    def handle_detection(self, keyword: Optional[str] = None, now_ms: Optional[int] = None) -> bool:
        """Debounce one raw detection and notify subscribers. Returns True if accepted."""
        if self.state is not WakeState.ARMED:
            self.logger.debug("wake_ignored %s", json.dumps({"reason": "not_armed"}))
            return False
        if not self.debounce.admit(now_ms):
            self.logger.info("wake_debounced %s", json.dumps({"window_ms": self.debounce.window_ms}))
            return False

        detection = WakeWordDetection(keyword=keyword or self.keyword, timestamp=int(time.time() * 1000))
        self.logger.info("wake_detected %s", json.dumps({"keyword": detection.keyword}))
        for cb in list(self._callbacks):
            try:
                cb(detection)
            except Exception as e:
                self.logger.error("wake_callback_failed %s", json.dumps({"error": str(e)}))
        return True

    async def _consume(self, mic: MicrophoneStream) -> None:
        loop = asyncio.get_running_loop()
        pending = np.zeros(0, dtype=np.int16)
        while True:
            block = await mic.read()
            if block is None or self._mic is not mic:
                return
            pending = np.concatenate([pending, block])
            while len(pending) >= FRAME_SAMPLES:
                frame, pending = pending[:FRAME_SAMPLES], pending[FRAME_SAMPLES:]
                try:
                    score = await loop.run_in_executor(None, self._score, frame)
                except Exception as e:
                    self._consume_failed(mic, e)
                    return
                # Disarmed while scoring: drop the stale result
                if self._mic is not mic or self.state is not WakeState.ARMED:
                    return
                if score >= self.sensitivity:
                    self.logger.debug("oww_prediction %s", json.dumps({"score": round(score, 4)}))
                    self._reset_model()
                    self.handle_detection(self.keyword)

    def _consume_failed(self, mic: MicrophoneStream, error: Exception) -> None:
        """Scoring failed: release the microphone and report DISABLED."""
        self.logger.error("oww_consume_failed %s", json.dumps({"error": str(error)}))
        if self._mic is not mic:
            return
        self._mic = None
        self._consumer = None
        mic.close()
        self.state = WakeState.DISABLED
        self.last_error = f"Wake word scoring failed: {error}"

    def _score(self, frame: np.ndarray) -> float:
        model = self.model
        if model is None:
            return 0.0
        prediction = model.predict(frame)
        return float(prediction.get(self.keyword, 0.0))

    def _reset_model(self) -> None:
        # Clear the prediction buffer so old scores cannot re-trigger
        if self.model is not None and hasattr(self.model, "reset"):
            self.model.reset()

    def status_message(self) -> str:
        return {
            WakeState.IDLE: "Wake word inactive",
            WakeState.INITIALIZING: "Initializing wake word detector...",
            WakeState.ARMED: f'Say "{self.keyword.replace("_", " ")}" to activate',
            WakeState.DISABLED: f"Wake word disabled ({self.last_error or 'unavailable'})",
        }[self.state]
