import unittest

from events import EventBus, RoundEvent


class EventBusTests(unittest.IsolatedAsyncioTestCase):
    async def test_fan_out(self):
        bus = EventBus()
        first, second = bus.subscribe(), bus.subscribe()
        bus.publish(RoundEvent(type="tick", game="crash", data={"multiplier": 1.5}))
        self.assertEqual((await first.get()).data, {"multiplier": 1.5})
        self.assertEqual((await second.get()).type, "tick")

    async def test_slow_subscriber_loses_oldest(self):
        bus = EventBus(max_queue=2)
        queue = bus.subscribe()
        for n in range(3):
            bus.publish(RoundEvent(type="tick", game="crash", data={"n": n}))
        self.assertEqual([queue.get_nowait().data["n"] for _ in range(2)], [1, 2])

    async def test_unsubscribe(self):
        bus = EventBus()
        queue = bus.subscribe()
        bus.unsubscribe(queue)
        bus.publish(RoundEvent(type="tick", game="crash"))
        self.assertTrue(queue.empty())
        self.assertEqual(bus.subscriber_count, 0)


if __name__ == "__main__":
    unittest.main()
