import asyncio

from enquirybot.services.events import NEW_MESSAGE
from enquirybot.ws.manager import ALL_CHANNELS, ConnectionManager


class FakeSocket:
    def __init__(self, fail: bool = False):
        self.accepted = False
        self.frames = []
        self.fail = fail

    async def accept(self):
        self.accepted = True

    async def send_json(self, frame):
        if self.fail:
            raise RuntimeError("socket closed")
        self.frames.append(frame)


class TestConnectionManager:
    def test_publish_reaches_number_and_wildcard_channels(self):
        manager = ConnectionManager()
        dashboard, number_view, other_number = FakeSocket(), FakeSocket(), FakeSocket()

        async def scenario():
            await manager.connect(ALL_CHANNELS, dashboard)
            await manager.connect("1001", number_view)
            await manager.connect("2002", other_number)
            await manager.publish(NEW_MESSAGE, {"recipientId": "1001", "from": "971500000001"})

        asyncio.run(scenario())

        expected = {"event": NEW_MESSAGE, "data": {"recipientId": "1001", "from": "971500000001"}}
        assert dashboard.frames == [expected]
        assert number_view.frames == [expected]
        assert other_number.frames == []

    def test_failed_socket_is_dropped(self):
        manager = ConnectionManager()
        broken = FakeSocket(fail=True)

        async def scenario():
            await manager.connect(ALL_CHANNELS, broken)
            await manager.publish(NEW_MESSAGE, {})

        asyncio.run(scenario())

        assert broken.accepted is True
        assert manager.connection_count() == 0
