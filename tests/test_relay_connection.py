#!/usr/bin/env python3
"""Test suite for relay server startup and connection verification."""

import os
import sys
import time
import json
import socket
import select
import asyncio
import subprocess
from pathlib import Path

import aiohttp
import pytest

# Add app root to Python path
app_root = str(Path(__file__).parent.parent.absolute())
if app_root not in sys.path:
    sys.path.insert(0, app_root)

SERVER_SCRIPT = os.path.join(app_root, 'relay_server', 'server.py')


def free_port():
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(('127.0.0.1', 0))
        return sock.getsockname()[1]


def read_process_output(process, timeout=0.1):
    """Read from process stdout/stderr with timeout."""
    reads = [process.stdout, process.stderr]
    ret = select.select(reads, [], [], timeout)

    if not ret[0]:
        return None

    for pipe in ret[0]:
        line = pipe.readline()
        if line:
            return line.decode().strip()
    return None


def start_server_process(port):
    env = os.environ.copy()
    env['PYTHONPATH'] = app_root
    env['LOG_FILE'] = ''
    return subprocess.Popen([
        sys.executable,
        '-u',  # Unbuffered output
        SERVER_SCRIPT,
        '--host', '127.0.0.1',
        '--port', str(port),
        '--log-level', 'DEBUG'
    ], stdout=subprocess.PIPE, stderr=subprocess.PIPE, env=env)


def stop_process(process):
    process.terminate()
    try:
        process.wait(timeout=5)
    except subprocess.TimeoutExpired:
        process.kill()
        process.wait()


async def exchange_gpt_response(url):
    """Connect a browser and a desktop, relay one response, return what the browser saw."""
    async with aiohttp.ClientSession() as session:
        browser = await session.ws_connect(f"{url}/?clientType=browser")
        seen = [await browser.receive_json(timeout=5)]
        desktop = await session.ws_connect(f"{url}/?clientType=desktop")
        await desktop.receive_json(timeout=5)
        seen.append(await browser.receive_json(timeout=5))
        await desktop.send_str(json.dumps({"type": "gpt_response", "data": "from subprocess"}))
        seen.append(await browser.receive_json(timeout=5))
        await desktop.close()
        seen.append(await browser.receive_json(timeout=5))
        await browser.close()
        return seen


def test_relay_server_process_relays_messages():
    """Start the server script and relay a message between real clients."""
    assert os.path.exists(SERVER_SCRIPT), f"Server script not found at {SERVER_SCRIPT}"
    port = free_port()
    process = start_server_process(port)

    try:
        start_time = time.time()
        server_started = False
        output = []

        while time.time() - start_time < 10:  # 10 second timeout
            if process.poll() is not None:
                error = process.stderr.read().decode()
                raise Exception(f"Server process terminated unexpectedly\nError output:\n{error}")

            line = read_process_output(process)
            if line:
                output.append(line)
                if "running on" in line:
                    server_started = True
                    break
            time.sleep(0.1)

        if not server_started:
            raise Exception("Server failed to start\nOutput:\n" + "\n".join(output))

        seen = asyncio.run(exchange_gpt_response(f"http://127.0.0.1:{port}"))

        assert [m.get("status") for m in seen] == [
            "connected", "desktop_connected", None, "desktop_disconnected"
        ]
        assert seen[2]["data"] == "from subprocess"
    finally:
        stop_process(process)


def test_bind_failure_exits_non_zero():
    """A port that is already taken is a fatal startup error."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as blocker:
        blocker.bind(('127.0.0.1', 0))
        blocker.listen(1)
        port = blocker.getsockname()[1]

        process = start_server_process(port)
        try:
            returncode = process.wait(timeout=10)
        except subprocess.TimeoutExpired:
            stop_process(process)
            pytest.fail("Server kept running on a port that is already in use")

    assert returncode == 1
    assert b"critical error" in process.stderr.read()


if __name__ == '__main__':
    pytest.main([__file__, '-v'])
