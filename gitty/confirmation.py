# ~/Projects/Gitty/gitty/confirmation.py
# Confirm/cancel gate in front of the git executor.

from __future__ import annotations

import asyncio
import codecs
import enum
import json
import logging
import os
import shlex
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, List, Optional, Tuple

from gitty.errors import GateBusyError, InferenceValidationError
from gitty.inference import CommandProposal
from gitty.repo_probe import GIT_ENV

READ_CHUNK = 4096

SUBCOMMAND_HELP = {
    "status": "Shows the current state of your working directory and staging area",
    "log": "Displays commit history for the current branch",
    "diff": "Shows changes between commits, commit and working tree, etc",
    "add": "Adds file contents to the staging area (index)",
    "commit": "Records changes to the repository",
    "push": "Updates remote refs along with associated objects",
    "pull": "Fetches from and integrates with another repository or local branch",
    "branch": "Lists, creates, or deletes branches",
    "checkout": "Switches branches or restores working tree files",
    "switch": "Switches branches",
    "restore": "Restores working tree files",
    "merge": "Joins two or more development histories together",
    "clone": "Clones a repository into a new directory",
    "init": "Creates an empty Git repository or reinitializes an existing one",
    "fetch": "Downloads objects and refs from another repository",
    "reset": "Resets current HEAD to the specified state",
    "rebase": "Reapplies commits on top of another base tip",
    "stash": "Stashes the changes in a dirty working directory away",
    "show": "Shows various types of objects",
}


def explain(command: str) -> str:
    first = command.split(" ")[0].lower() if command else ""
    return SUBCOMMAND_HELP.get(first, "Executes a git command")


def command_to_args(command: str) -> Tuple[str, ...]:
    """'git log --oneline -n 5' -> ('log', '--oneline', '-n', '5'). Quote-aware."""
    try:
        args = shlex.split(command)
    except ValueError as e:
        raise InferenceValidationError(f"Cannot split command {command!r}: {e}") from e
    if args and args[0] == "git":
        args = args[1:]
    if not args:
        raise InferenceValidationError(f"Command {command!r} has no git subcommand")
    return tuple(args)


# =========================
# Executor
# =========================

@dataclass(frozen=True)
class ExecResult:
    exit_code: Optional[int]
    stdout: str
    stderr: str


class GitExecutor:
    """Runs `git <args>` and streams output as it arrives."""

    def __init__(self, logger: logging.Logger,
                 on_output: Optional[Callable[[str], None]] = None):
        self.logger = logger
        self.on_output = on_output

    async def run(self, args: List[str], cwd: Optional[str] = None) -> ExecResult:
        env = dict(os.environ)
        env.update(GIT_ENV)
        self.logger.info("exec_begin %s", json.dumps({"args": list(args), "cwd": cwd}))
        try:
            proc = await asyncio.create_subprocess_exec(
                "git", *args,
                cwd=cwd,
                env=env,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            self.logger.error("exec_failed %s", json.dumps({"error": str(e)}))
            return ExecResult(exit_code=None, stdout="", stderr=str(e))

        out_chunks: List[str] = []
        err_chunks: List[str] = []
        pumped = False
        try:
            await asyncio.gather(
                self._pump(proc.stdout, out_chunks),
                self._pump(proc.stderr, err_chunks),
            )
            pumped = True
        finally:
            # The child is always reaped, killed first if its output was abandoned
            if not pumped and proc.returncode is None:
                try:
                    proc.kill()
                except ProcessLookupError:
                    pass
            code = await proc.wait()
        self.logger.info("exec_end %s", json.dumps({"args": list(args), "exit_code": code}))
        return ExecResult(exit_code=code, stdout="".join(out_chunks), stderr="".join(err_chunks))

    async def _pump(self, stream: asyncio.StreamReader, sink: List[str]) -> None:
        # Fixed-size reads: a single output line may be arbitrarily long
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        while True:
            chunk = await stream.read(READ_CHUNK)
            text = decoder.decode(chunk, final=not chunk)
            if text:
                sink.append(text)
                if self.on_output:
                    self.on_output(text)
            if not chunk:
                return


# =========================
# Gate
# =========================

class GateState(enum.Enum):
    EMPTY = "empty"
    PENDING = "pending"


@dataclass(frozen=True)
class PendingCommand:
    command: str  # subcommand text, without the leading "git"
    args: Tuple[str, ...]
    explanation: str = ""
    utterance: str = ""


@dataclass(frozen=True)
class Resolution:
    decision: str  # "confirm" | "cancel"
    pending: PendingCommand
    context: Any = None
    result: Optional[ExecResult] = None


@dataclass
class _Slot:
    pending: PendingCommand
    context: Any = None


class ConfirmationGate:
    """Holds at most one PendingCommand until a confirm or cancel decision."""

    CONFIRM_KEYS = ("y",)
    CANCEL_KEYS = ("n",)

    def __init__(self, executor: Any, logger: logging.Logger,
                 on_resolved: Optional[Callable[[Resolution], Awaitable[None]]] = None,
                 notify: Optional[Callable[[str], None]] = None,
                 cwd: Optional[str] = None):
        self.executor = executor
        self.logger = logger
        self.on_resolved = on_resolved
        self.notify = notify or (lambda msg: None)
        self.cwd = cwd
        self._slot: Optional[_Slot] = None
        self._resolving = False

    @property
    def state(self) -> GateState:
        return GateState.PENDING if self._slot else GateState.EMPTY

    @property
    def pending(self) -> Optional[PendingCommand]:
        return self._slot.pending if self._slot else None

    def propose(self, proposal: CommandProposal, context: Any = None, utterance: str = "") -> PendingCommand:
        if self._slot is not None:
            raise GateBusyError(f"A command is already pending: git {self._slot.pending.command}")
        args = command_to_args(proposal.command)
        pending = PendingCommand(
            command=" ".join(shlex.quote(a) for a in args),
            args=args,
            explanation=proposal.explanation or explain(args[0]),
            utterance=utterance,
        )
        self._slot = _Slot(pending=pending, context=context)
        self.logger.info("command_pending %s", json.dumps({"command": pending.command, "args": list(args)}))
        return pending

    async def confirm(self) -> Optional[ExecResult]:
        slot = self._slot
        if slot is None or self._resolving:
            return None
        self.logger.info("command_confirmed %s", json.dumps({"command": slot.pending.command}))
        result = None
        self._resolving = True
        try:
            result = await self.executor.run(list(slot.pending.args), cwd=self.cwd)
        finally:
            self._slot = None
            self._resolving = False
            await self._resolved(Resolution("confirm", slot.pending, slot.context, result))
        return result

    async def cancel(self) -> bool:
        slot = self._slot
        if slot is None or self._resolving:
            return False
        self._slot = None
        self.logger.info("command_cancelled %s", json.dumps({"command": slot.pending.command}))
        self.notify(f"Cancelled: git {slot.pending.command}")
        await self._resolved(Resolution("cancel", slot.pending, slot.context))
        return True

    def decision_for(self, key: str) -> Optional[str]:
        """Map one keystroke to 'confirm', 'cancel' or None (ignored)."""
        k = (key or "").strip().lower()
        if k in self.CONFIRM_KEYS:
            return "confirm"
        if k in self.CANCEL_KEYS:
            return "cancel"
        return None

    async def handle_key(self, key: str) -> Optional[str]:
        if self._slot is None:
            return None
        decision = self.decision_for(key)
        if decision == "confirm":
            await self.confirm()
        elif decision == "cancel":
            await self.cancel()
        return decision

    async def _resolved(self, resolution: Resolution) -> None:
        if self.on_resolved is not None:
            await self.on_resolved(resolution)
