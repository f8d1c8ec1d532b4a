# ~/Projects/Gitty/gitty/inference.py
# Utterance + repo context -> one git command, via an OpenAI-compatible chat endpoint.

from __future__ import annotations

import asyncio
import json
import logging
import os
import re
import shlex
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Sequence, Tuple

import requests

from gitty.errors import (
    InferenceConfigError,
    InferenceParseError,
    InferenceServiceError,
    InferenceValidationError,
)
from gitty.repo_probe import RepoSnapshot

DEFAULT_LLM = {
    "endpoint": "https://api.groq.com/openai/v1/chat/completions",
    "model": "llama-3.3-70b-versatile",
    "temperature": 0.2,
    "timeout_s": 20.0,
    "history_turns": 5,
    "api_key_env": ["GITTY_API_KEY", "GROQ_API_KEY"],
}

EXCERPT_CHARS = 200

FENCED_RE = re.compile(r"```(?:json)?\s*\n(.*?)\n?```", re.DOTALL)

SHELL_OPERATOR_CHARS = set("();<>|&")


@dataclass(frozen=True)
class CommandProposal:
    command: str
    explanation: str = ""
    reasoning_tags: Optional[Tuple[str, ...]] = None
    needs_clarification: bool = False
    clarification_question: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "command": self.command,
            "explanation": self.explanation,
            "reasoningTags": list(self.reasoning_tags) if self.reasoning_tags is not None else None,
            "needsClarification": self.needs_clarification,
            "clarificationQuestion": self.clarification_question,
        }


# =========================
# Response recovery
# =========================

@dataclass(frozen=True)
class DecodeResult:
    ok: bool
    value: Optional[Dict[str, Any]] = None
    reason: str = ""
    strategy: str = ""


def _loads_object(text: str, strategy: str) -> DecodeResult:
    try:
        value = json.loads(text)
    except (TypeError, ValueError) as e:
        return DecodeResult(False, reason=f"{strategy}: {e}", strategy=strategy)
    if not isinstance(value, dict):
        return DecodeResult(False, reason=f"{strategy}: not a JSON object", strategy=strategy)
    return DecodeResult(True, value=value, strategy=strategy)


def decode_direct(text: str) -> DecodeResult:
    return _loads_object(text.strip(), "direct")


def decode_fenced(text: str) -> DecodeResult:
    match = FENCED_RE.search(text)
    if not match:
        return DecodeResult(False, reason="fenced: no fenced code block", strategy="fenced")
    return _loads_object(match.group(1), "fenced")


def decode_brace_slice(text: str) -> DecodeResult:
    first = text.find("{")
    last = text.rfind("}")
    if first == -1 or last <= first:
        return DecodeResult(False, reason="brace_slice: no {...} span", strategy="brace_slice")
    return _loads_object(text[first:last + 1], "brace_slice")


DECODERS: Sequence[Callable[[str], DecodeResult]] = (decode_direct, decode_fenced, decode_brace_slice)


def decode_response(text: str, decoders: Sequence[Callable[[str], DecodeResult]] = DECODERS) -> DecodeResult:
    """Try each decoder in order; the first success wins."""
    reasons = []
    for decoder in decoders:
        result = decoder(text)
        if result.ok:
            return result
        reasons.append(result.reason)
    return DecodeResult(False, reason="; ".join(reasons))


# =========================
# Validation
# =========================

def is_shell_chain(command: str) -> bool:
    """True if the command would need a shell: operators outside quotes, or newlines."""
    if "\n" in command or "\r" in command:
        return True
    # Command substitution
    if "`" in command or "$(" in command:
        return True
    lexer = shlex.shlex(command, posix=True, punctuation_chars=True)
    lexer.whitespace_split = True
    try:
        tokens = list(lexer)
    except ValueError:
        # Unbalanced quotes
        return True
    return any(tok and set(tok) <= SHELL_OPERATOR_CHARS for tok in tokens)


def _field(obj: Dict[str, Any], snake: str, camel: str) -> Any:
    return obj[snake] if snake in obj else obj.get(camel)


def validate_proposal(obj: Dict[str, Any]) -> CommandProposal:
    command = obj.get("command")
    if not isinstance(command, str):
        raise InferenceValidationError(
            f"Missing or invalid 'command' field in LLM response. Got: {json.dumps(obj)[:EXCERPT_CHARS]}"
        )
    needs = _field(obj, "needs_clarification", "needsClarification")
    if not isinstance(needs, bool):
        raise InferenceValidationError(
            f"Missing or invalid 'needs_clarification' field in LLM response. Got: {json.dumps(obj)[:EXCERPT_CHARS]}"
        )

    command = command.strip()
    if not needs:
        if not command:
            raise InferenceValidationError("Empty 'command' in LLM response")
        if is_shell_chain(command):
            raise InferenceValidationError(f"Refusing chained shell command: {command}")

    explanation = obj.get("explanation")
    tags = _field(obj, "reasoning_tags", "reasoningTags")
    question = _field(obj, "clarification_question", "clarificationQuestion")

    return CommandProposal(
        command=command,
        explanation=explanation if isinstance(explanation, str) else "",
        reasoning_tags=(
            tuple(tags) if isinstance(tags, list) and all(isinstance(t, str) for t in tags) else None
        ),
        needs_clarification=needs,
        clarification_question=question if needs and isinstance(question, str) else None,
    )


def parse_proposal(text: str) -> CommandProposal:
    result = decode_response(text)
    if not result.ok:
        excerpt = text[:EXCERPT_CHARS]
        raise InferenceParseError(
            f"Unparseable response from inference service ({result.reason}). Raw content: {excerpt}...",
            excerpt=excerpt,
        )
    return validate_proposal(result.value)


# =========================
# Prompt construction
# =========================

def build_context_block(snapshot: RepoSnapshot, history: Sequence[str],
                        learning_mode: bool, history_turns: int = 5) -> str:
    upstream = "none"
    if snapshot.upstream:
        upstream = snapshot.upstream
        if snapshot.ahead_behind:
            upstream += f" (ahead {snapshot.ahead_behind.ahead}, behind {snapshot.ahead_behind.behind})"

    recent = list(history)[-history_turns:] if history_turns > 0 else []
    lines = [
        f"- Current branch: {snapshot.branch or 'unknown (detached HEAD)'}",
        f"- Upstream: {upstream}",
        f"- Dirty working directory: {'yes' if snapshot.dirty else 'no'}",
        f"- Staged files: {len(snapshot.staged_files)}",
        f"- Unstaged files: {len(snapshot.unstaged_files)}",
        f"- Untracked files: {len(snapshot.untracked_files)}",
    ]
    if snapshot.dirty_files:
        lines.append(f"- Changed paths: {', '.join(snapshot.dirty_files)}")
    lines.append(f"- Recent command history: {', '.join(recent) if recent else 'none'}")
    lines.append(f"- Learning mode: {'enabled (user will confirm commands)' if learning_mode else 'disabled'}")
    return "\n".join(lines)


def build_system_message(utterance: str, snapshot: RepoSnapshot, history: Sequence[str],
                         learning_mode: bool, history_turns: int = 5) -> str:
    context = build_context_block(snapshot, history, learning_mode, history_turns)
    return f"""You are a Git command assistant. Your role is to:
1. Convert natural language into safe, non-destructive git commands
2. Only suggest a single git command (no chaining with &&, ||, ; or pipes)
3. Avoid destructive operations like force push, hard reset, or branch deletion unless explicitly requested
4. Ask for clarification if the user's intent is unclear or you need more information
5. Return responses in JSON format matching this schema:
   {{
     "command": "git <command>",
     "explanation": "Brief explanation of what this command does",
     "reasoning_tags": ["optional", "array", "of", "reasoning"],
     "needs_clarification": false,
     "clarification_question": "Optional question if needs_clarification is true"
   }}

Repository context:
{context}

User utterance: "{utterance}"

Respond ONLY with valid JSON. If you're unsure about the user's intent, set needs_clarification to true and provide a clarification_question."""


# =========================
# Client
# =========================

class CommandInferenceClient:
    """Calls the inference endpoint; never returns a malformed proposal."""

    def __init__(self, cfg: Dict[str, Any], logger: logging.Logger,
                 session: Optional[Any] = None, api_key: Optional[str] = None):
        self.cfg = dict(DEFAULT_LLM)
        self.cfg.update(cfg.get("llm", {}) or {})
        self.logger = logger
        self.endpoint = self.cfg["endpoint"]
        self.model = self.cfg["model"]
        self.temperature = float(self.cfg["temperature"])
        self.timeout = float(self.cfg["timeout_s"])
        self.history_turns = int(self.cfg["history_turns"])
        self._api_key = api_key
        self._session = session or requests.Session()

        self.logger.info("llm_ready %s", json.dumps({"endpoint": self.endpoint, "model": self.model}))

    def _resolve_api_key(self) -> str:
        if self._api_key:
            return self._api_key
        names = self.cfg["api_key_env"]
        if isinstance(names, str):
            names = [names]
        for name in names:
            value = os.environ.get(name)
            if value:
                return value
        raise InferenceConfigError(f"{' / '.join(names)} is not configured")

    def build_request(self, utterance: str, snapshot: RepoSnapshot, history: Sequence[str],
                      learning_mode: bool) -> Dict[str, Any]:
        return {
            "model": self.model,
            "messages": [
                {"role": "system", "content": build_system_message(
                    utterance, snapshot, history, learning_mode, self.history_turns)},
                {"role": "user", "content": utterance},
            ],
            "temperature": self.temperature,
            "response_format": {"type": "json_object"},
        }

    async def infer(self, utterance: str, snapshot: RepoSnapshot, history: Sequence[str],
                    learning_mode: bool = False) -> CommandProposal:
        api_key = self._resolve_api_key()
        body = self.build_request(utterance, snapshot, history, learning_mode)

        t0 = time.time()
        loop = asyncio.get_running_loop()
        content = await loop.run_in_executor(None, self._post, body, api_key)
        proposal = parse_proposal(content)

        self.logger.info("llm_done %s", json.dumps({
            "model": self.model,
            "ms": int((time.time() - t0) * 1000),
            "command": proposal.command,
            "needs_clarification": proposal.needs_clarification,
        }))
        return proposal

    def _post(self, body: Dict[str, Any], api_key: str) -> str:
        """Blocking HTTP round-trip; returns the assistant message text."""
        headers = {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {api_key}",
        }
        try:
            resp = self._session.post(self.endpoint, headers=headers, json=body, timeout=self.timeout)
        except requests.RequestException as e:
            self.logger.error("llm_failed %s", json.dumps({"stage": "network", "err": str(e)}))
            raise InferenceServiceError(f"Network error calling inference API: {e}") from e

        if resp.status_code != 200:
            self.logger.error("llm_failed %s", json.dumps({"stage": "status", "status": resp.status_code}))
            raise InferenceServiceError(f"Inference API returned status {resp.status_code}: {resp.text}")

        try:
            data = resp.json()
        except ValueError as e:
            raise InferenceServiceError("Failed to parse inference API response as JSON") from e

        try:
            content = data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError):
            content = None
        if not isinstance(content, str) or not content.strip():
            raise InferenceServiceError("No content in inference API response")
        return content
