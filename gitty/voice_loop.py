#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""
Gitty — Voice Git Loop

Say the wake word (or press Enter), speak an intent, confirm the git command.

Pipeline:
- OpenWakeWord arming on a dedicated microphone stream
- Speech capture with silence endpointing (faster-whisper fragments)
- Read-only repository probe for context
- Command inference against an OpenAI-compatible endpoint
- y/n confirmation gate before anything touches the repository
"""

from __future__ import annotations

import argparse
import asyncio
import copy
import enum
import json
import logging
import os
import sys
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Deque, Dict, Optional, Tuple

import yaml

from gitty.capture import SpeechCaptureSession, WhisperRecognizer
from gitty.confirmation import ConfirmationGate, GitExecutor, PendingCommand, Resolution, explain
from gitty.errors import (
    GateBusyError,
    InferenceError,
    MicrophonePermissionError,
    WakeWordError,
)
from gitty.inference import CommandInferenceClient
from gitty.repo_probe import RepositoryProbe
from gitty.wake import WakeWordDetection, WakeWordDetector

# Keyboard push-to-talk support
try:
    from pynput import keyboard
    KEYBOARD_AVAILABLE = True
except ImportError:
    keyboard = None
    KEYBOARD_AVAILABLE = False

# =========================
# Config & Logging
# =========================

CONFIG_PATH = Path("~/.config/gitty/voice.yaml").expanduser()
DATA_DIR = Path("~/.local/share/gitty").expanduser()
LOG_DIR = DATA_DIR / "logs"
MODELS_DIR = DATA_DIR / "models"

DEFAULT_CONFIG: Dict[str, Any] = {
    "version": "v1",
    "wake": {
        "enabled": True,
        "keyword": "hey_gitty",
        "model_dir": str(MODELS_DIR / "wake"),
        "keyword_model": str(MODELS_DIR / "wake" / "hey_gitty.onnx"),
        "sensitivity": 0.5,
        "debounce_ms": 2000,
        "inference_framework": "onnx",
    },
    "capture": {
        "silence_ms": 2000,
        "initial_timeout_ms": 5000,
        "max_duration_s": 30.0,
        "vad_threshold": 0.02,
        "fragment_pause_ms": 400,
        "min_speech_ms": 150,
        "block_size": 512,
    },
    "stt": {
        "model": "small.en",
        "device": "cuda",
        "compute_type": "int8_float16",
        "beam_size": 1,
        "language": "en",
    },
    "llm": {
        "endpoint": "https://api.groq.com/openai/v1/chat/completions",
        "model": "llama-3.3-70b-versatile",
        "temperature": 0.2,
        "timeout_s": 20.0,
        "history_turns": 5,
    },
    "probe": {
        "timeout_s": 2.0,
        "max_dirty_files": 20,
    },
    "orchestrator": {
        "mode": "mic",
        "learning_mode": True,
        "history_max": 20,
        "push_to_talk_key": "f8",
    },
    "logging": {"debug": False},
}

SECTIONS = ["wake", "capture", "stt", "llm", "probe", "orchestrator", "logging"]


def load_config(path: Optional[Path] = None, write_default: bool = True) -> Dict[str, Any]:
    """Load YAML config, writing the defaults on first run unless told not to."""
    path = Path(path or os.environ.get("GITTY_CONFIG") or CONFIG_PATH).expanduser()
    if not path.exists():
        cfg = copy.deepcopy(DEFAULT_CONFIG)
        if write_default:
            path.parent.mkdir(parents=True, exist_ok=True)
            with open(path, "w", encoding="utf-8") as f:
                yaml.safe_dump(cfg, f, sort_keys=False)
    else:
        with open(path, "r", encoding="utf-8") as f:
            cfg = yaml.safe_load(f) or {}

    # Normalize sections: file values over defaults
    for key in SECTIONS:
        merged = dict(DEFAULT_CONFIG[key])
        merged.update(cfg.get(key) or {})
        cfg[key] = merged
    cfg.setdefault("version", DEFAULT_CONFIG["version"])

    # Environment overrides for wake assets
    if os.environ.get("GITTY_WAKE_MODEL_DIR"):
        cfg["wake"]["model_dir"] = os.environ["GITTY_WAKE_MODEL_DIR"]
    if os.environ.get("GITTY_WAKE_KEYWORD"):
        cfg["wake"]["keyword_model"] = os.environ["GITTY_WAKE_KEYWORD"]

    return cfg


def ensure_logger(log_cfg: Dict[str, Any], log_dir: Optional[Path] = None) -> Tuple[logging.Logger, str]:
    """Set up file + console logger."""
    log_dir = Path(log_dir or log_cfg.get("dir") or LOG_DIR).expanduser()
    log_dir.mkdir(parents=True, exist_ok=True)
    ts = datetime.now().strftime("%Y%m%d")
    log_path = log_dir / f"voice_loop-{ts}.log"

    logger = logging.getLogger("gitty.voice")
    logger.setLevel(logging.DEBUG if log_cfg.get("debug") else logging.INFO)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    logger.propagate = False

    fh = logging.FileHandler(log_path, encoding="utf-8")
    fh.setLevel(logging.DEBUG)

    # Console stays quiet: the terminal is the user's interface
    ch = logging.StreamHandler(sys.stderr)
    ch.setLevel(logging.DEBUG if log_cfg.get("debug") else logging.WARNING)

    fmt = logging.Formatter("%(asctime)s [%(levelname)s] %(message)s")
    fh.setFormatter(fmt)
    ch.setFormatter(fmt)

    logger.addHandler(fh)
    logger.addHandler(ch)

    return logger, str(log_path)


def now_iso() -> str:
    return datetime.now().isoformat(timespec="seconds")


def log_event(logger: logging.Logger, kind: str, payload: Dict[str, Any]):
    try:
        logger.info("%s %s", kind, json.dumps(payload))
    except (TypeError, ValueError):
        logger.info("%s %s", kind, str(payload))


# =========================
# Pipeline state
# =========================

class PipelineState(enum.Enum):
    IDLE = "idle"
    LISTENING = "listening"
    PROBING = "probing"
    INFERRING = "inferring"
    AWAITING_CONFIRMATION = "awaiting_confirmation"
    EXECUTING = "executing"


@dataclass
class CycleContext:
    """One pipeline cycle. The re-arm decision reads only `was_armed`."""

    trigger: str  # "wake" | "manual" | "text"
    was_armed: bool
    started_at: float = field(default_factory=time.time)
    utterance: str = ""


# =========================
# Orchestrator
# =========================

class VoiceLoop:
    """Wake word -> capture -> probe -> inference -> confirmation -> execution."""

    def __init__(self, cfg: Dict[str, Any], logger: logging.Logger,
                 probe: Optional[RepositoryProbe] = None,
                 wake: Optional[WakeWordDetector] = None,
                 inference: Optional[CommandInferenceClient] = None,
                 executor: Optional[Any] = None,
                 session_factory: Optional[Callable[[], SpeechCaptureSession]] = None,
                 notify: Optional[Callable[[str], None]] = None,
                 cwd: Optional[str] = None):
        self.cfg = cfg
        self.logger = logger
        orch = cfg.get("orchestrator", {})

        self.cwd = cwd or orch.get("cwd") or os.getcwd()
        self.mode = orch.get("mode", "mic")
        self.learning_mode = bool(orch.get("learning_mode", True))
        self.history: Deque[str] = deque(maxlen=int(orch.get("history_max", 20)))
        self.notify = notify or self._print

        self.probe = probe or RepositoryProbe(cfg, logger)
        self.wake = wake or WakeWordDetector(cfg, logger)
        self.inference = inference or CommandInferenceClient(cfg, logger)
        self.executor = executor or GitExecutor(logger, on_output=self._write_output)
        self._session_factory = session_factory
        self._recognizer: Optional[WhisperRecognizer] = None

        self.gate = ConfirmationGate(
            self.executor, logger,
            on_resolved=self._after_resolution,
            notify=self.notify,
            cwd=self.cwd,
        )

        self.state = PipelineState.IDLE
        self.session: Optional[SpeechCaptureSession] = None
        self.running = True
        self._tasks: set = set()
        self._unsubscribe_wake = self.wake.on_detection(self._on_wake)
        self._kb_listener = None

    # ---------- output ----------

    @staticmethod
    def _print(message: str) -> None:
        sys.stdout.write(message + "\n")
        sys.stdout.flush()

    @staticmethod
    def _write_output(text: str) -> None:
        sys.stdout.write(text)
        sys.stdout.flush()

    def _say(self, kind: str, message: str, **extra: Any) -> None:
        log_event(self.logger, kind, {"message": message, **extra})
        self.notify(message)

    # ---------- components ----------

    def _new_session(self) -> SpeechCaptureSession:
        if self._session_factory is not None:
            return self._session_factory()
        if self._recognizer is None:
            # Loads whisper on first use
            self._recognizer = WhisperRecognizer(self.cfg, self.logger)
        return SpeechCaptureSession(self.cfg, self.logger, self._recognizer)

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            self.logger.error("loop_error %s", json.dumps({"error": str(exc), "type": type(exc).__name__}))

    # ---------- lifecycle ----------

    async def start(self, use_wake: bool = True) -> None:
        log_event(self.logger, "loop_start", {"mode": self.mode, "cwd": self.cwd, "wake": use_wake})
        if use_wake and self.mode == "mic":
            try:
                await self.wake.initialize()
                await self.wake.arm()
            except (WakeWordError, MicrophonePermissionError) as e:
                self._say("wake_unavailable", f"Wake word disabled: {e}. Press Enter to talk.")
            else:
                self.notify(self.wake.status_message())
        self._start_keyboard()

    async def shutdown(self) -> None:
        self.running = False
        if self.session is not None:
            self.session.stop()
        if self._kb_listener is not None:
            self._kb_listener.stop()
            self._kb_listener = None
        self._unsubscribe_wake()
        await self.wake.destroy()
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        log_event(self.logger, "shutdown", {"history": len(self.history)})

    def _start_keyboard(self) -> None:
        """Global push-to-talk key (pynput), when available."""
        key_name = self.cfg.get("orchestrator", {}).get("push_to_talk_key")
        if not KEYBOARD_AVAILABLE or not key_name or self.mode != "mic":
            return
        target = getattr(keyboard.Key, str(key_name).lower(), None)
        if target is None:
            self.logger.warning("push_to_talk_unknown_key %s", json.dumps({"key": key_name}))
            return
        loop = asyncio.get_running_loop()

        def on_press(key):
            if key == target:
                loop.call_soon_threadsafe(self.request_trigger, "manual")

        try:
            self._kb_listener = keyboard.Listener(on_press=on_press)
            self._kb_listener.start()
            self.logger.info("keyboard_listener_started %s", json.dumps({"key": key_name}))
        except Exception as e:
            self.logger.warning("keyboard_listener_failed %s", json.dumps({"error": str(e)}))

    # ---------- triggers ----------

    def _on_wake(self, detection: WakeWordDetection) -> None:
        if self.state is not PipelineState.IDLE or self.gate.pending is not None:
            log_event(self.logger, "wake_ignored", {"state": self.state.value})
            return
        self.request_trigger("wake")

    def request_trigger(self, source: str = "manual") -> None:
        """Fire-and-forget trigger from callbacks and key handlers."""
        self._spawn(self.trigger(source))

    def _can_start(self, source: str) -> bool:
        if self.state is not PipelineState.IDLE or self.gate.pending is not None:
            log_event(self.logger, "trigger_ignored", {"source": source, "state": self.state.value})
            return False
        return True

    async def trigger(self, source: str = "manual") -> None:
        """Run one voice cycle. No-op unless idle."""
        if not self._can_start(source):
            return
        ctx = CycleContext(trigger=source, was_armed=self.wake.is_armed)
        self.state = PipelineState.LISTENING
        log_event(self.logger, "cycle_begin", {"trigger": source, "was_armed": ctx.was_armed})

        # The microphone belongs to capture for the rest of this cycle
        self.wake.disarm()
        self.notify("Listening...")
        session = self._new_session()
        self.session = session
        try:
            outcome = await session.run()
        except MicrophonePermissionError as e:
            self._say("capture_denied", f"Microphone unavailable: {e}")
            await self._finish(ctx, "mic_denied")
            return
        except Exception as e:
            self._say("capture_failed", f"Speech capture failed: {e}")
            await self._finish(ctx, "capture_failed")
            return
        finally:
            self.session = None

        if outcome is None or outcome.no_speech:
            self._say("no_speech", "No speech detected.")
            await self._finish(ctx, "no_speech")
            return
        await self._handle_utterance(outcome.transcript, ctx)

    async def submit_text(self, utterance: str) -> None:
        """Typed intent: same pipeline, minus capture."""
        utterance = utterance.strip()
        if not utterance or not self._can_start("text"):
            return
        ctx = CycleContext(trigger="text", was_armed=self.wake.is_armed)
        self.state = PipelineState.PROBING
        log_event(self.logger, "cycle_begin", {"trigger": "text", "was_armed": ctx.was_armed})
        await self._handle_utterance(utterance, ctx)

    async def _handle_utterance(self, utterance: str, ctx: CycleContext) -> None:
        ctx.utterance = utterance
        self.state = PipelineState.PROBING
        self._say("heard_text", f'Heard: "{utterance}"', chars=len(utterance))

        snapshot = await self.probe.snapshot(self.cwd)
        if not snapshot.in_repo:
            self._say("not_a_repo", f"Not a git repository: {self.cwd}")
            await self._finish(ctx, "not_a_repo")
            return

        self.state = PipelineState.INFERRING
        try:
            proposal = await self.inference.infer(utterance, snapshot, list(self.history), self.learning_mode)
        except InferenceError as e:
            self._say("inference_failed", f"Could not work out a command: {e}", type=type(e).__name__)
            await self._finish(ctx, "inference_failed")
            return

        if proposal.needs_clarification:
            question = proposal.clarification_question or "Could you say that another way?"
            self._say("clarification", question)
            await self._finish(ctx, "clarification")
            return

        try:
            pending = self.gate.propose(proposal, ctx, utterance)
        except (InferenceError, GateBusyError) as e:
            self._say("proposal_rejected", f"Could not use the proposed command: {e}")
            await self._finish(ctx, "proposal_rejected")
            return

        self.state = PipelineState.AWAITING_CONFIRMATION
        self.notify(self.render_prompt(pending))

    def render_prompt(self, pending: PendingCommand) -> str:
        lines = [f"  git {pending.command}"]
        if self.learning_mode:
            lines.append(f"  What this does: {pending.explanation or explain(pending.command)}")
        lines.append("  Run it? [y] run  [n] cancel")
        return "\n".join(lines)

    # ---------- confirmation ----------

    async def handle_key(self, key: str) -> Optional[str]:
        """Resolve the pending command from a single keystroke; other keys are ignored."""
        if self.state is not PipelineState.AWAITING_CONFIRMATION:
            return None
        decision = self.gate.decision_for(key)
        if decision == "confirm":
            self.state = PipelineState.EXECUTING
            try:
                await self.gate.confirm()
            except Exception as e:
                # The gate has already cleared and finished the cycle
                self.logger.error("loop_error %s", json.dumps({"error": str(e), "type": type(e).__name__}))
                self.notify(f"Command failed to start: {e}")
        elif decision == "cancel":
            await self.gate.cancel()
        return decision

    async def _after_resolution(self, resolution: Resolution) -> None:
        if resolution.decision == "confirm":
            self.history.append(f"git {resolution.pending.command}")
            result = resolution.result
            if result is not None:
                if not result.stdout and not result.stderr:
                    self.notify("(no output)")
                self.notify(f"(exit {result.exit_code if result.exit_code is not None else -1})")
        ctx = resolution.context or CycleContext(trigger="manual", was_armed=False)
        await self._finish(ctx, resolution.decision)

    async def _finish(self, ctx: CycleContext, reason: str) -> None:
        """End the cycle. Re-arm iff the detector was armed when the cycle began."""
        self.state = PipelineState.IDLE
        log_event(self.logger, "cycle_end", {
            "trigger": ctx.trigger,
            "reason": reason,
            "was_armed": ctx.was_armed,
            "ms": int((time.time() - ctx.started_at) * 1000),
        })
        if ctx.was_armed and not self.wake.is_armed and self.running:
            try:
                await self.wake.arm()
            except (WakeWordError, MicrophonePermissionError) as e:
                self._say("wake_rearm_failed", f"Wake word could not re-arm: {e}")


# =========================
# Terminal front end
# =========================

class TerminalFrontEnd:
    """Line-oriented stdin front end.

    Empty line: listen now. y/n: resolve a pending command. q: quit.
    Any other text, in text mode: treated as a typed intent.
    """

    def __init__(self, loop_obj: VoiceLoop):
        self.voice = loop_obj
        self._queue: Optional[asyncio.Queue] = None

    def _reader(self, loop: asyncio.AbstractEventLoop) -> None:
        # Daemon thread: a blocking readline must not hold up shutdown
        while True:
            line = sys.stdin.readline()
            loop.call_soon_threadsafe(self._queue.put_nowait, line if line else None)
            if not line:
                return

    async def run(self) -> None:
        loop = asyncio.get_running_loop()
        self._queue = asyncio.Queue()
        threading.Thread(target=self._reader, args=(loop,), daemon=True).start()

        while self.voice.running:
            line = await self._queue.get()
            if line is None:
                break
            await self.dispatch(line)

    async def dispatch(self, line: str) -> None:
        text = line.strip()
        voice = self.voice
        if voice.state is PipelineState.AWAITING_CONFIRMATION:
            if await voice.handle_key(text) is None:
                voice.notify("Press y to run or n to cancel.")
            return
        if text.lower() in ("q", "quit", "exit"):
            voice.running = False
            return
        if not text:
            if voice.mode == "mic":
                voice.request_trigger("manual")
            return
        if voice.mode != "text":
            voice.notify("Press Enter and speak, or run with --text to type requests.")
            return
        voice._spawn(voice.submit_text(text))


# =========================
# Entry Point
# =========================

async def run_async(cfg: Dict[str, Any], logger: logging.Logger, use_wake: bool, cwd: Optional[str]) -> None:
    voice = VoiceLoop(cfg, logger, cwd=cwd)
    voice.notify("Gitty: say the wake word or press Enter, then speak a git intent. q quits.")
    await voice.start(use_wake=use_wake)
    try:
        await TerminalFrontEnd(voice).run()
    finally:
        await voice.shutdown()


def main(argv=None):
    """Main entry point."""
    parser = argparse.ArgumentParser(prog="gitty", description="Voice-driven git commands")
    parser.add_argument("--config", type=Path, help="path to voice.yaml")
    parser.add_argument("--text", action="store_true", help="typed intents only, no microphone")
    parser.add_argument("--no-wake", action="store_true", help="do not arm the wake word")
    parser.add_argument("--cwd", help="repository to operate on (default: current directory)")
    parser.add_argument("--debug", action="store_true")
    args = parser.parse_args(argv)

    cfg = load_config(args.config)
    if args.text:
        cfg["orchestrator"]["mode"] = "text"
    if args.debug:
        cfg["logging"]["debug"] = True

    logger, log_path = ensure_logger(cfg.get("logging", {}))

    log_event(logger, "boot", {
        "log_file": log_path,
        "time": now_iso(),
        "version": cfg.get("version"),
        "mode": cfg["orchestrator"]["mode"],
    })

    try:
        asyncio.run(run_async(cfg, logger, use_wake=not args.no_wake, cwd=args.cwd))
    except KeyboardInterrupt:
        logger.info("shutdown_requested %s", json.dumps({"reason": "keyboard_interrupt"}))
    except Exception as e:
        logger.error("fatal_error %s", json.dumps({"error": str(e), "type": type(e).__name__}))
        raise


if __name__ == "__main__":
    main()
