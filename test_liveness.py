"""
心跳检测测试
"""

import asyncio

from conftest import FakeWebSocket
from relay.liveness import LivenessMonitor


def test_missing_pong_calls_on_dead():
    """上一轮 ping 未收到 pong 时，下一次探测终止会话"""
    async def main():
        ws = FakeWebSocket(answer_pings=False)
        dead = []
        monitor = LivenessMonitor(ws, interval=0.01, on_dead=lambda: dead.append(True))
        monitor.start()

        await asyncio.sleep(0.1)
        assert dead == [True]
        assert monitor.timed_out
        assert monitor.probes == 1
        assert not monitor.running
        monitor.stop()

    asyncio.run(main())


def test_pong_keeps_session_alive():
    async def main():
        ws = FakeWebSocket(answer_pings=True)
        dead = []
        monitor = LivenessMonitor(ws, interval=0.01, on_dead=lambda: dead.append(True))
        monitor.start()

        await asyncio.sleep(0.1)
        assert dead == []
        assert not monitor.timed_out
        assert monitor.probes >= 3
        monitor.stop()

    asyncio.run(main())


def test_stop_is_idempotent_and_final():
    """stop 只生效一次，停止后不再探测"""
    async def main():
        ws = FakeWebSocket(answer_pings=False)
        dead = []
        monitor = LivenessMonitor(ws, interval=0.01, on_dead=lambda: dead.append(True))
        monitor.start()

        assert monitor.stop() is True
        assert monitor.stop() is False
        assert monitor.stop_count == 1

        await asyncio.sleep(0.05)
        assert ws.pings == 0
        assert dead == []
        assert not monitor.running

        monitor.start()
        assert not monitor.running

    asyncio.run(main())


def test_closed_connection_ends_probing():
    async def main():
        ws = FakeWebSocket()
        ws.remote_close()
        monitor = LivenessMonitor(ws, interval=0.01)
        monitor.start()

        await asyncio.sleep(0.05)
        assert monitor.probes == 0
        assert not monitor.running
        assert not monitor.timed_out

    asyncio.run(main())
