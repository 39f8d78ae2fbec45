from __future__ import annotations

import contextlib
import importlib.util
import json
import os
import socket
import subprocess
import sys
import time
import urllib.request
from pathlib import Path

import pytest


def _free_port() -> int:
    with contextlib.closing(socket.socket(socket.AF_INET, socket.SOCK_STREAM)) as s:
        s.bind(("127.0.0.1", 0))
        return int(s.getsockname()[1])


def _wait_ready(base_url: str, timeout_s: float = 10.0) -> None:
    deadline = time.time() + timeout_s
    last_err: Exception | None = None
    while time.time() < deadline:
        try:
            with urllib.request.urlopen(f"{base_url}/health", timeout=1.5) as resp:
                if resp.status == 200:
                    return
        except Exception as e:  # pragma: no cover
            last_err = e
            time.sleep(0.1)
    raise RuntimeError(f"server did not become ready: {last_err}")


def _get(url: str) -> tuple[int, str]:
    with urllib.request.urlopen(url, timeout=5.0) as resp:
        body = resp.read().decode("utf-8", errors="replace")
        return int(resp.status), body


def test_server_boots_from_environment_with_fake_generation(tmp_path: Path) -> None:
    if importlib.util.find_spec("uvicorn") is None:
        pytest.skip("uvicorn not installed")
    repo_root = Path(__file__).resolve().parents[1]
    port = _free_port()
    env = os.environ.copy()
    for name in ("TWILIO_ACCOUNT_SID", "TWILIO_AUTH_TOKEN", "TWILIO_NUMBER", "DEEPGRAM_API_KEY"):
        env.pop(name, None)
    env.update(
        {
            "LLM_PROVIDER": "fake",
            "REDIS_URL": "",
            "KNOWLEDGE_BASE_DIR": str(repo_root / "tests" / "fixtures" / "knowledge_base"),
            "SESSIONS_DIR": str(tmp_path / "sessions"),
            "AUDIO_DIR": str(tmp_path / "audio"),
            "LOG_DIR": str(tmp_path / "logs"),
        }
    )
    proc = subprocess.Popen(
        [
            sys.executable,
            "-m",
            "uvicorn",
            "advisor.server:create_app",
            "--factory",
            "--host",
            "127.0.0.1",
            "--port",
            str(port),
        ],
        cwd=str(repo_root),
        env=env,
        stdout=subprocess.DEVNULL,
        stderr=subprocess.DEVNULL,
    )
    try:
        base = f"http://127.0.0.1:{port}"
        _wait_ready(base)

        status, body = _get(f"{base}/health")
        assert status == 200
        payload = json.loads(body)
        assert payload["collaborators"]["generation"] is True
        assert payload["collaborators"]["synthesis"] is False
        assert payload["knowledge_chunks"] == 2

        status, body = _get(f"{base}/metrics")
        assert status == 200
        assert "kb_chunks_current 2" in body

        assert (tmp_path / "logs" / "app.log").exists()
    finally:
        proc.terminate()
        try:
            proc.wait(timeout=5)
        except subprocess.TimeoutExpired:  # pragma: no cover
            proc.kill()
            proc.wait(timeout=5)
