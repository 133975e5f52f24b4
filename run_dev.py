from __future__ import annotations

import os
import socket
import subprocess
import sys
import time
import urllib.error
import urllib.request
from pathlib import Path

from settings import load_settings


ROOT = Path(__file__).resolve().parent
RUN_LOCK = ROOT / ".run_dev.lock"


def _is_pid_running(pid: int) -> bool:
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except OSError:
        return False
    return True


def _acquire_run_lock() -> None:
    if RUN_LOCK.exists():
        try:
            existing_pid = int(RUN_LOCK.read_text(encoding="utf-8").strip())
        except (ValueError, OSError):
            existing_pid = 0

        if _is_pid_running(existing_pid):
            raise RuntimeError(
                f"run_dev.py is already running (pid={existing_pid}). "
                "Stop that process before starting another one."
            )
        try:
            RUN_LOCK.unlink()
        except OSError:
            pass

    RUN_LOCK.write_text(str(os.getpid()), encoding="utf-8")


def _release_run_lock() -> None:
    try:
        if not RUN_LOCK.exists():
            return
        try:
            lock_pid = int(RUN_LOCK.read_text(encoding="utf-8").strip())
        except (ValueError, OSError):
            lock_pid = os.getpid()
        if lock_pid == os.getpid():
            RUN_LOCK.unlink()
    except OSError:
        pass


def _terminate(proc: subprocess.Popen) -> None:
    if proc.poll() is not None:
        return
    proc.terminate()
    try:
        proc.wait(timeout=5)
    except subprocess.TimeoutExpired:
        proc.kill()


def _is_bindable(host: str, port: int) -> bool:
    if port <= 0 or port > 65535:
        return False
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        try:
            sock.bind((host, port))
        except OSError:
            return False
    return True


def _pick_port(host: str, preferred: int, avoid: set[int], scan: int = 100) -> int:
    for port in [preferred] + list(range(preferred + 1, preferred + scan)):
        if port in avoid:
            continue
        if _is_bindable(host, port):
            return port
    raise RuntimeError(f"no free port near {preferred}")


def _wait_ready(proc: subprocess.Popen, port: int, timeout_sec: float = 20.0) -> bool:
    deadline = time.time() + timeout_sec
    url = f"http://127.0.0.1:{port}/api/health"
    while time.time() < deadline:
        if proc.poll() is not None:
            return False
        try:
            with urllib.request.urlopen(url, timeout=1.0) as resp:
                if resp.status == 200:
                    return True
        except (urllib.error.URLError, TimeoutError, OSError):
            time.sleep(0.25)
    return False


def _start_server(host: str, preferred_port: int) -> tuple[subprocess.Popen, int]:
    tried: set[int] = set()
    for _ in range(8):
        port = _pick_port(host, preferred_port, avoid=tried)
        tried.add(port)
        # Single worker: meetings and their timers live in this one process.
        cmd = [sys.executable, "-m", "uvicorn", "backend.api:app", "--host", host, "--port", str(port)]
        proc = subprocess.Popen(cmd, cwd=str(ROOT))
        if _wait_ready(proc, port):
            return proc, port
        _terminate(proc)
    raise RuntimeError("could not bind the server to a port")


def main() -> int:
    try:
        _acquire_run_lock()
    except RuntimeError as exc:
        print(f"[error] {exc}", file=sys.stderr)
        return 1

    try:
        settings = load_settings()
        try:
            proc, port = _start_server(settings.host, settings.port)
        except RuntimeError as exc:
            print(f"[error] server failed to start: {exc}", file=sys.stderr)
            return 1

        print(f"[run] Lean Coffee running at http://localhost:{port}")
        print(f"[run] state file: {settings.state_file}")
        print("[run] Ctrl+C to stop")
        try:
            return proc.wait()
        except KeyboardInterrupt:
            print("\n[stop] shutting down...")
            _terminate(proc)
            return 0
    finally:
        _release_run_lock()


if __name__ == "__main__":
    raise SystemExit(main())
