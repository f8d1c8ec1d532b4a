"""Hardware, network and git stand-ins shared by the test modules."""

from __future__ import annotations

import asyncio
from typing import Any, Callable, Dict, List, Optional, Tuple

from gitty.confirmation import ExecResult


class FakeHandle:
    def __init__(self, when_ms: int, fn: Callable, args: Tuple):
        self.when_ms = when_ms
        self.fn = fn
        self.args = args
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


class FakeScheduler:
    """Manual clock with asyncio's call_later(delay_s, fn, *args) shape."""

    def __init__(self):
        self.now_ms = 0
        self._handles: List[FakeHandle] = []

    def call_later(self, delay_s: float, fn: Callable, *args: Any) -> FakeHandle:
        handle = FakeHandle(self.now_ms + int(round(delay_s * 1000)), fn, args)
        self._handles.append(handle)
        return handle

    def advance(self, ms: int) -> None:
        target = self.now_ms + ms
        while True:
            due = [h for h in self._handles if not h.cancelled and h.when_ms <= target]
            if not due:
                break
            handle = min(due, key=lambda h: h.when_ms)
            self._handles.remove(handle)
            self.now_ms = handle.when_ms
            handle.fn(*handle.args)
        self.now_ms = target


class FakeMic:
    """MicrophoneStream stand-in: feed() blocks in, close() ends read()."""

    sample_rate = 16000

    def __init__(self, fail: Optional[Exception] = None):
        self.fail = fail
        self.open_calls = 0
        self.close_calls = 0
        self._queue: Optional[asyncio.Queue] = None

    @property
    def is_open(self) -> bool:
        return self.open_calls > 0 and self.close_calls == 0

    def _q(self) -> asyncio.Queue:
        if self._queue is None:
            self._queue = asyncio.Queue()
        return self._queue

    def open(self) -> None:
        if self.fail is not None:
            raise self.fail
        self.open_calls += 1

    def feed(self, block) -> None:
        self._q().put_nowait(block)

    def close(self) -> None:
        self.close_calls += 1
        self._q().put_nowait(None)

    async def read(self):
        if self.close_calls:
            return None
        return await self._q().get()


class FakeRecognizer:
    """Hands its callbacks to the test and waits to be cancelled."""

    def __init__(self, error: Optional[Exception] = None):
        self.error = error
        self.stop_calls = 0
        self.on_partial = None
        self.on_final = None
        self.on_busy = None

    async def run(self, mic, on_partial, on_final, on_busy=None) -> None:
        self.on_partial = on_partial
        self.on_final = on_final
        self.on_busy = on_busy
        if self.error is not None:
            raise self.error
        await asyncio.Event().wait()

    def stop(self) -> None:
        self.stop_calls += 1


class FakeResponse:
    def __init__(self, status_code: int = 200, data: Any = None, text: str = ""):
        self.status_code = status_code
        self._data = data
        self.text = text

    def json(self):
        if self._data is None:
            raise ValueError("no JSON")
        return self._data


class FakeSession:
    """requests.Session stand-in recording every POST."""

    def __init__(self, response: Optional[FakeResponse] = None, error: Optional[Exception] = None):
        self.response = response
        self.error = error
        self.posts: List[Dict[str, Any]] = []

    def post(self, url, headers=None, json=None, timeout=None):
        self.posts.append({"url": url, "headers": headers, "json": json, "timeout": timeout})
        if self.error is not None:
            raise self.error
        return self.response


def chat_response(content: str) -> FakeResponse:
    return FakeResponse(200, {"choices": [{"message": {"role": "assistant", "content": content}}]})


class FakeExecutor:
    def __init__(self, result: Optional[ExecResult] = None, error: Optional[Exception] = None):
        self.result = result or ExecResult(exit_code=0, stdout="", stderr="")
        self.error = error
        self.calls: List[Tuple[List[str], Optional[str]]] = []

    async def run(self, args, cwd=None) -> ExecResult:
        self.calls.append((list(args), cwd))
        if self.error is not None:
            raise self.error
        return self.result


class FakeProbe:
    def __init__(self, snapshot):
        self.snapshot_value = snapshot
        self.calls: List[Optional[str]] = []

    async def snapshot(self, cwd=None):
        self.calls.append(cwd)
        return self.snapshot_value


class FakeInference:
    def __init__(self, proposal=None, error: Optional[Exception] = None):
        self.proposal = proposal
        self.error = error
        self.calls: List[Tuple] = []

    async def infer(self, utterance, snapshot, history, learning_mode=False):
        self.calls.append((utterance, snapshot, list(history), learning_mode))
        if self.error is not None:
            raise self.error
        return self.proposal


class FakeWake:
    """WakeWordDetector stand-in with the same lifecycle surface."""

    def __init__(self, armed: bool = False, arm_error: Optional[Exception] = None):
        self.is_armed = armed
        self.arm_error = arm_error
        self.arm_calls = 0
        self.disarm_calls = 0
        self.destroyed = False
        self._callbacks: List[Callable] = []

    async def initialize(self, config=None) -> None:
        return None

    async def arm(self) -> None:
        self.arm_calls += 1
        if self.arm_error is not None:
            raise self.arm_error
        self.is_armed = True

    def disarm(self) -> None:
        self.disarm_calls += 1
        self.is_armed = False

    async def destroy(self) -> None:
        self.disarm()
        self.destroyed = True

    def on_detection(self, callback):
        self._callbacks.append(callback)
        return lambda: self._callbacks.remove(callback)

    def fire(self, detection) -> None:
        for cb in list(self._callbacks):
            cb(detection)

    def status_message(self) -> str:
        return "armed" if self.is_armed else "inactive"


class FakeCaptureSession:
    def __init__(self, outcome=None, error: Optional[Exception] = None):
        self.outcome = outcome
        self.error = error
        self.run_calls = 0
        self.stopped = False

    async def run(self):
        self.run_calls += 1
        if self.error is not None:
            raise self.error
        return self.outcome

    def stop(self) -> None:
        self.stopped = True
