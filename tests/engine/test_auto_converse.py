import asyncio
import unittest

from persona_chat.auto_converse import AutoConverseLoop
from persona_chat.errors import CredentialRejectedError, TransientError
from persona_chat.memory.models import Character
from tests.engine.base import EngineHarness, FakeProvider


class AutoConverseTests(unittest.TestCase):
    def _setup(self, provider: FakeProvider) -> tuple[EngineHarness, AutoConverseLoop, list[float]]:
        h = EngineHarness(provider)
        delays: list[float] = []

        async def fake_sleep(seconds: float) -> None:
            delays.append(seconds)
            await asyncio.sleep(0)

        auto = AutoConverseLoop(
            engine=h.engine,
            sessions=h.store,
            status=h.status,
            toasts=h.toasts,
            turn_delay_seconds=1.0,
            error_retry_delay_seconds=30.0,
            sleep=fake_sleep,
        )
        return h, auto, delays

    def _character_mode(self, h: EngineHarness, *names: str) -> None:
        for name in names:
            character = Character(name=name, system_instruction=f"You are {name}.")
            h.update(lambda s, c=character: s.characters.append(c))
        h.update(lambda s: setattr(s, "is_character_mode", True))

    def test_repeats_prompt_for_max_turns(self) -> None:
        h, auto, delays = self._setup(FakeProvider("r1", "r2"))

        async def scenario() -> bool:
            started = await auto.start(h.session_id, "keep going", max_turns=2)
            await auto.wait()
            return started

        self.assertTrue(asyncio.run(scenario()))
        self.assertEqual(
            [("user", "keep going"), ("model", "r1"), ("user", "keep going"), ("model", "r2")],
            h.contents(),
        )
        self.assertEqual(2, auto.turns_completed)
        self.assertEqual([1.0], delays)
        self.assertEqual("Auto-converse finished after 2 turn(s).", h.toasts.history[-1].message)
        self.assertFalse(auto.is_running)

    def test_characters_take_turns_in_roster_order(self) -> None:
        h, auto, _ = self._setup(FakeProvider("a1", "b1", "a2"))
        self._character_mode(h, "Alice", "Bob")

        async def scenario() -> None:
            await auto.start(h.session_id, max_turns=3)
            await auto.wait()

        asyncio.run(scenario())

        self.assertEqual(["Alice", "Bob", "Alice"], [m.character_name for m in h.messages])
        self.assertEqual(
            ["You are Alice.", "You are Bob.", "You are Alice."],
            [r.system_instruction for r in h.provider.requests],
        )
        self.assertEqual(["a1", "b1", "a2"], [m.content for m in h.messages])

    def test_start_is_rejected_without_prompt_or_characters(self) -> None:
        h, auto, _ = self._setup(FakeProvider())

        self.assertFalse(asyncio.run(auto.start(h.session_id, "   ")))
        h.update(lambda s: setattr(s, "is_character_mode", True))
        self.assertFalse(asyncio.run(auto.start(h.session_id)))
        self.assertEqual(["error", "error"], [t.kind for t in h.toasts.history])
        self.assertEqual([], h.provider.calls)

    def test_second_start_while_running_is_rejected(self) -> None:
        provider = FakeProvider(["x"], hold_after=0)
        h, auto, _ = self._setup(provider)

        async def scenario() -> bool:
            await auto.start(h.session_id, "go")
            await provider.streamed.wait()
            second = await auto.start(h.session_id, "again")
            await auto.stop()
            return second

        self.assertFalse(asyncio.run(scenario()))

    def test_transient_failure_is_retried_once(self) -> None:
        h, auto, delays = self._setup(FakeProvider(TransientError("503"), "recovered"))

        async def scenario() -> None:
            await auto.start(h.session_id, "go", max_turns=1)
            await auto.wait()

        asyncio.run(scenario())

        self.assertEqual(1, auto.turns_completed)
        self.assertEqual([30.0], delays)
        self.assertEqual([("user", "go"), ("model", "recovered")], h.contents())

    def test_second_transient_failure_ends_the_loop(self) -> None:
        h, auto, _ = self._setup(FakeProvider(TransientError("503"), TransientError("503"), "unused"))

        async def scenario() -> None:
            await auto.start(h.session_id, "go", max_turns=3)
            await auto.wait()

        asyncio.run(scenario())

        self.assertEqual(0, auto.turns_completed)
        self.assertEqual(2, len(h.provider.calls))
        self.assertEqual([], h.messages)

    def test_non_retryable_failure_ends_the_loop(self) -> None:
        h, auto, delays = self._setup(FakeProvider(CredentialRejectedError("bad key")))

        async def scenario() -> None:
            await auto.start(h.session_id, "go", max_turns=3)
            await auto.wait()

        asyncio.run(scenario())

        self.assertEqual(1, len(h.provider.calls))
        self.assertEqual([], delays)
        self.assertFalse(auto.is_running)

    def test_stop_cancels_the_generation_in_flight(self) -> None:
        provider = FakeProvider(["first", "second"], hold_after=1)
        h, auto, _ = self._setup(provider)

        async def scenario() -> bool:
            await auto.start(h.session_id, "go")
            await provider.streamed.wait()
            return await auto.stop()

        self.assertTrue(asyncio.run(scenario()))
        self.assertFalse(auto.is_running)
        self.assertEqual([("user", "go"), ("model", "first")], h.contents())
        self.assertTrue(h.status.is_idle)
        self.assertFalse(any("finished" in t.message for t in h.toasts.history))

    def test_switching_sessions_stops_the_loop(self) -> None:
        provider = FakeProvider(["x", "y"], hold_after=1)
        h, auto, _ = self._setup(provider)

        async def scenario() -> None:
            await auto.start(h.session_id, "go")
            await provider.streamed.wait()
            h.store.create_session()
            await auto.wait()

        asyncio.run(scenario())
        self.assertFalse(auto.is_running)
        self.assertEqual(0, auto.turns_completed)

    def test_deleting_the_session_stops_the_loop(self) -> None:
        provider = FakeProvider(["x", "y"], hold_after=1)
        h, auto, _ = self._setup(provider)
        other = h.store.create_session(select=False)

        async def scenario() -> None:
            await auto.start(h.session_id, "go")
            await provider.streamed.wait()
            h.store.delete_session(h.session_id)
            await auto.wait()

        asyncio.run(scenario())
        self.assertFalse(auto.is_running)
        self.assertEqual(other.id, h.store.active_session_id)


if __name__ == "__main__":
    unittest.main()
