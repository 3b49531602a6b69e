"""
Restart-Resume Verification Script.

Runs the recorder under uvicorn against a scratch store and checks that:
1. An active recording survives an unplanned restart.
2. An explicitly stopped recording does not resume.
"""

import os
import signal
import subprocess
import sys
import tempfile
import time

import httpx

BASE_URL = "http://127.0.0.1:8000"
API_PREFIX = "/v1"


def wait_for_server(retries=15, delay=1):
    url = f"{BASE_URL}/health"
    print(f"Waiting for server at {url}...")
    for _ in range(retries):
        try:
            resp = httpx.get(url)
            if resp.status_code == 200:
                print("✅ Server is up!")
                return True
        except httpx.ConnectError:
            pass
        time.sleep(delay)
    print("❌ Server failed to start.")
    return False


def start_server(env):
    return subprocess.Popen(
        [sys.executable, "-m", "uvicorn", "train_audit.app.main:app", "--host", "127.0.0.1", "--port", "8000"],
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        env=env,
    )


def stop_server(proc):
    proc.send_signal(signal.SIGTERM)
    proc.wait()
    time.sleep(1)  # Wait for port release


def recorder_status():
    resp = httpx.get(f"{BASE_URL}{API_PREFIX}/recorder/status")
    resp.raise_for_status()
    return resp.json()


def run_verification():
    workdir = tempfile.mkdtemp(prefix="train-audit-")
    env = {
        **os.environ,
        "DATABASE_URL": f"sqlite+aiosqlite:///{os.path.join(workdir, 'recorder.db')}",
        "SAMPLER_MODE": "synthetic",
        "AUTO_RESUME": "true",
    }
    
    # 1. First run: start recording
    print("\n--- [Step 1] Starting Server (Initial) ---")
    proc = start_server(env)
    try:
        if not wait_for_server():
            out, err = proc.communicate(timeout=2)
            print("Server Stdout:", out.decode())
            print("Server Stderr:", err.decode())
            raise Exception("Server start failed")
        
        print("\n--- [Step 2] Starting Recording ---")
        resp = httpx.post(f"{BASE_URL}{API_PREFIX}/recorder/start", json={"interval_ms": 2000})
        if resp.status_code != 200 or not resp.json()["is_recording"]:
            raise Exception(f"Start failed: {resp.status_code} {resp.text}")
        print(f"✅ Recording started ({resp.json()['strategy']})")
    finally:
        print("\n--- [Step 3] Killing Server (Unplanned Restart) ---")
        stop_server(proc)
    
    # 2. Restart: the session must come back on its own
    print("\n--- [Step 4] Restarting Server ---")
    proc = start_server(env)
    try:
        if not wait_for_server():
            raise Exception("Server restart failed")
        status = recorder_status()
        if status["is_recording"] and status["interval_ms"] == 2000:
            print("✅ Recording resumed after restart")
        else:
            print(f"❌ Recording not resumed: {status}")
            raise Exception("Resume failed")
        
        print("\n--- [Step 5] Stopping Recording Explicitly ---")
        resp = httpx.post(f"{BASE_URL}{API_PREFIX}/recorder/stop")
        if resp.json()["is_recording"]:
            raise Exception("Stop failed")
        print("✅ Recording stopped")
    finally:
        stop_server(proc)
    
    # 3. Restart after an explicit stop: nothing resumes
    print("\n--- [Step 6] Restarting Server (After Stop) ---")
    proc = start_server(env)
    try:
        if not wait_for_server():
            raise Exception("Server restart failed")
        status = recorder_status()
        if status["is_recording"]:
            print(f"❌ Recording resumed after an explicit stop: {status}")
            raise Exception("Unexpected resume")
        print("✅ No resume after explicit stop")
        print(f"Pending records: {status['pending_records']}, last sync: {status['last_sync']}")
    finally:
        print("\n--- [Step 7] Stopping Server ---")
        stop_server(proc)


if __name__ == "__main__":
    run_verification()
