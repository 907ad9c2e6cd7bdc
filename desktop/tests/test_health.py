import asyncio
import socket
import threading
import time
from urllib.error import URLError

from desktop import client
from desktop.health import HealthProber


def _prober(fetch, **kwargs):
    kwargs.setdefault("timeout", 1.0)
    kwargs.setdefault("interval", 0.01)
    return HealthProber("http://127.0.0.1:5001", fetch=fetch, **kwargs)


def test_check_health_true_only_on_200():
    seen = []

    def fetch(method, url, timeout, data):
        seen.append((method, url))
        return 200, b'{"status": "ok"}'

    async def scenario():
        prober = _prober(fetch)
        assert await prober.check_health() is True
        assert prober.status.healthy is True
        assert prober.status.last_checked_at is not None

    asyncio.run(scenario())
    assert seen == [("GET", "http://127.0.0.1:5001/health")]


def test_check_health_never_raises():
    def unhealthy(method, url, timeout, data):
        return 503, b'{"status": "error"}'

    def refused(method, url, timeout, data):
        raise URLError(ConnectionRefusedError(111, "Connection refused"))

    def slow(method, url, timeout, data):
        raise socket.timeout("timed out")

    async def scenario():
        for fetch in (unhealthy, refused, slow):
            prober = _prober(fetch)
            assert await prober.check_health() is False
            assert prober.status.healthy is False

    asyncio.run(scenario())


def test_check_health_against_closed_port():
    sock = socket.socket()
    sock.bind(("127.0.0.1", 0))
    port = sock.getsockname()[1]
    sock.close()

    async def scenario():
        return await HealthProber(f"http://127.0.0.1:{port}", timeout=0.5, fetch=client.fetch).check_health()

    assert asyncio.run(scenario()) is False


def test_wait_for_healthy_returns_on_first_success():
    calls = {"n": 0}

    def fetch(method, url, timeout, data):
        calls["n"] += 1
        return (200 if calls["n"] >= 3 else 503), b""

    async def scenario():
        return await _prober(fetch).wait_for_healthy(max_attempts=10, interval=0.01)

    assert asyncio.run(scenario()) is True
    assert calls["n"] == 3


def test_wait_for_healthy_is_bounded():
    calls = {"n": 0}

    def fetch(method, url, timeout, data):
        calls["n"] += 1
        raise URLError("connection refused")

    async def scenario():
        return await _prober(fetch).wait_for_healthy(max_attempts=4, interval=0.01)

    assert asyncio.run(scenario()) is False
    assert calls["n"] == 4


def test_probes_from_one_prober_never_overlap():
    state = {"in_flight": 0, "max_in_flight": 0}
    lock = threading.Lock()

    def fetch(method, url, timeout, data):
        with lock:
            state["in_flight"] += 1
            state["max_in_flight"] = max(state["max_in_flight"], state["in_flight"])
        time.sleep(0.02)
        with lock:
            state["in_flight"] -= 1
        return 200, b""

    async def scenario():
        prober = _prober(fetch)
        return await asyncio.gather(*(prober.check_health() for _ in range(5)))

    assert asyncio.run(scenario()) == [True] * 5
    assert state["max_in_flight"] == 1


def test_for_port_targets_the_other_port():
    seen = []

    def fetch(method, url, timeout, data):
        seen.append(url)
        return 200, b""

    async def scenario():
        return await _prober(fetch).for_port(5002).check_health()

    assert asyncio.run(scenario()) is True
    assert seen == ["http://127.0.0.1:5002/health"]
