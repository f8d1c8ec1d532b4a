#!/usr/bin/env python3
"""
Gitty — Environment Checker
Reports: deps, git binary, wake word assets, config, API key and endpoint reachability.
"""
from __future__ import annotations
import sys
import json
import os
import shutil
from pathlib import Path
from typing import Any, Dict, Optional


def try_import(name: str) -> bool:
    try:
        __import__(name)
        return True
    except Exception:
        return False


DEPS = {
    "pyyaml": "yaml",
    "numpy": "numpy",
    "requests": "requests",
    "sounddevice": "sounddevice",
    "openwakeword": "openwakeword",
    "faster-whisper": "faster_whisper",
    "pynput": "pynput",          # optional
}


def build_report(cfg_path: Optional[Path] = None, probe_endpoint: bool = True) -> Dict[str, Any]:
    from gitty.voice_loop import CONFIG_PATH, load_config

    cfg_path = Path(cfg_path or os.environ.get("GITTY_CONFIG") or CONFIG_PATH).expanduser()
    report: Dict[str, Any] = {
        "python": {"version": sys.version.split()[0], "executable": sys.executable},
        "config": {"path": str(cfg_path), "exists": cfg_path.exists()},
        "deps": {},
        "binaries": {},
        "wake": {},
        "llm": {"api_key_set": None, "endpoint_ok": None},
        "audio": {"input_default": None},
    }

    # --- config (read only; defaults when missing)
    try:
        cfg = load_config(cfg_path, write_default=False)
    except Exception as e:
        report["config"]["error"] = f"{e.__class__.__name__}: {e}"
        cfg = {}

    # --- deps
    for pkg, mod in DEPS.items():
        report["deps"][pkg] = try_import(mod)

    # --- binaries
    report["binaries"]["git"] = shutil.which("git")

    # --- wake word assets on disk
    wake = cfg.get("wake", {})
    framework = wake.get("inference_framework", "onnx")
    model_dir = Path(wake.get("model_dir") or ".").expanduser()
    keyword_model = wake.get("keyword_model")
    report["wake"] = {
        "enabled": wake.get("enabled"),
        "model_dir": str(model_dir),
        "melspectrogram_ok": (model_dir / f"melspectrogram.{framework}").exists(),
        "embedding_ok": (model_dir / f"embedding_model.{framework}").exists(),
        "keyword_model_ok": bool(keyword_model) and Path(keyword_model).expanduser().exists(),
    }

    # --- LLM
    llm = cfg.get("llm", {})
    names = llm.get("api_key_env") or ["GITTY_API_KEY", "GROQ_API_KEY"]
    if isinstance(names, str):
        names = [names]
    report["llm"]["api_key_set"] = any(os.environ.get(n) for n in names)
    report["llm"]["model"] = llm.get("model")
    report["llm"]["endpoint"] = llm.get("endpoint")
    if probe_endpoint and llm.get("endpoint"):
        try:
            import requests  # type: ignore
            # Any HTTP answer means the host is reachable; auth is checked at inference time
            r = requests.get(llm["endpoint"], timeout=3)
            report["llm"]["endpoint_ok"] = r.status_code < 500
        except Exception:
            report["llm"]["endpoint_ok"] = False

    # --- audio devices (best-effort)
    if report["deps"]["sounddevice"]:
        try:
            import sounddevice as sd  # type: ignore
            def_dev = sd.default.device
            inputs = sd.query_devices(def_dev[0]) if def_dev and def_dev[0] is not None else None
            report["audio"]["input_default"] = inputs["name"] if inputs else None
        except Exception as e:
            report["audio"]["error"] = f"{e.__class__.__name__}: {e}"

    return report


def main() -> int:
    report = build_report()
    print(json.dumps(report, indent=2))
    ok = bool(report["binaries"]["git"]) and report["deps"]["requests"] and report["deps"]["pyyaml"]
    return 0 if ok else 1


if __name__ == "__main__":
    sys.exit(main())
