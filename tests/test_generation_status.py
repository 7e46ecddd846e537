import asyncio
import unittest

from persona_chat.errors import BusyError
from persona_chat.generation_status import GenerationState, GenerationStatus


class GenerationStatusTests(unittest.TestCase):
    def test_second_begin_is_busy(self) -> None:
        status = GenerationStatus()
        status.try_begin("s1")
        with self.assertRaises(BusyError) as ctx:
            status.try_begin("s2")
        self.assertEqual("s1", ctx.exception.session_id)
        self.assertEqual("s1", status.session_id)

    def test_cancel_then_complete_returns_to_idle(self) -> None:
        status = GenerationStatus()
        states: list[GenerationState] = []
        status.add_listener(states.append)
        ticket = status.try_begin("s1")

        self.assertTrue(status.cancel())
        self.assertFalse(status.cancel())
        self.assertTrue(status.complete(ticket))
        self.assertEqual(
            [GenerationState.GENERATING, GenerationState.CANCELLING, GenerationState.IDLE],
            states,
        )
        self.assertIsNone(status.session_id)

    def test_stale_ticket_is_ignored(self) -> None:
        status = GenerationStatus()
        old = status.try_begin("s1")
        status.complete(old)
        current = status.try_begin("s1")

        self.assertFalse(status.complete(old))
        self.assertFalse(status.is_current(old))
        self.assertTrue(status.is_current(current))
        self.assertEqual(GenerationState.GENERATING, status.state)

    def test_elapsed_display(self) -> None:
        status = GenerationStatus()
        self.assertEqual("", status.elapsed_display())
        self.assertEqual(0.0, status.elapsed_seconds())
        status.try_begin("s1")
        self.assertTrue(status.elapsed_display().endswith("s"))

    def test_wait_idle_resolves_on_complete(self) -> None:
        status = GenerationStatus()

        async def scenario() -> list[str]:
            order: list[str] = []
            ticket = status.try_begin("s1")

            async def waiter() -> None:
                await status.wait_idle()
                order.append("idle")

            task = asyncio.create_task(waiter())
            await asyncio.sleep(0)
            order.append("completing")
            status.complete(ticket)
            await task
            await status.wait_idle()
            return order

        self.assertEqual(["completing", "idle"], asyncio.run(scenario()))


if __name__ == "__main__":
    unittest.main()
