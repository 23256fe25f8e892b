import asyncio
import shutil
import unittest

from micro_x_agent_bridge.errors import SessionNotFoundError
from micro_x_agent_bridge.messages import Message, ResultMessage, SystemMessage
from micro_x_agent_bridge.sdk import SessionOptions, create_session, prompt, resume_session
from tests.memory.base import artifact_dir
from tests.support.fakes import EchoTool, ScriptedProvider, text_turn, tool_turn


async def _run(session, text: str) -> list:
    await session.send(text)
    return [item async for item in session.receive()]


async def _let_runtime_release() -> None:
    for _ in range(5):
        await asyncio.sleep(0)


class SessionOptionsTests(unittest.TestCase):
    def test_provider_prefix_selects_provider(self) -> None:
        self.assertEqual(("openai", "gpt-4o"), SessionOptions(model="openai/gpt-4o").resolved_model())
        self.assertEqual(("anthropic", "claude-x"), SessionOptions(model="Anthropic/claude-x").resolved_model())
        self.assertEqual(("anthropic", "org/model"), SessionOptions(model="org/model").resolved_model())


class SdkEntryPointTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp_dir = artifact_dir("sdk")
        self._db_path = str(self._tmp_dir / "sessions.db")

    def tearDown(self) -> None:
        shutil.rmtree(self._tmp_dir, ignore_errors=True)

    def _options(self, provider: ScriptedProvider) -> SessionOptions:
        return SessionOptions(
            model="test-model",
            cwd="/work",
            provider=provider,
            memory_db_path=self._db_path,
            enable_subagents=False,
        )

    def test_fresh_session_yields_system_message_then_result(self) -> None:
        async def scenario():
            session = await create_session(self._options(ScriptedProvider([text_turn("Hello!")])))
            async with session:
                items = await _run(session, "hi")
            await _let_runtime_release()
            return items

        items = asyncio.run(scenario())
        self.assertEqual(3, len(items))
        self.assertIsInstance(items[0], SystemMessage)
        self.assertEqual("/work", items[0].cwd)
        self.assertIsInstance(items[1], Message)
        self.assertEqual("assistant", items[1].role)
        self.assertIsInstance(items[2], ResultMessage)
        self.assertEqual("Hello!", items[2].result)
        self.assertFalse(items[2].is_error)

    def test_send_during_tool_exchange_does_not_orphan_the_tool_call(self) -> None:
        async def scenario():
            provider = ScriptedProvider(
                [tool_turn("toolu_1", "echo", {"text": "x"}), text_turn("done a"), text_turn("reply b")],
                delay=0.05,
            )
            options = self._options(provider)
            options.tools = [EchoTool()]
            session = await create_session(options)
            async with session:
                first = await session.send("a")
                second = None
                items = []
                async for item in session.receive():
                    items.append(item)
                    if second is None and isinstance(item, Message) and item.tool_uses:
                        second = await session.send("b")
                cursor = session.current_parent_uuid
            await _let_runtime_release()
            return provider.calls, items, first, second, cursor

        calls, items, first, second, cursor = asyncio.run(scenario())
        self.assertIsNotNone(second)
        results = [item for item in items if isinstance(item, ResultMessage)]
        self.assertEqual([1, 2], [r.seq for r in results])
        self.assertEqual("reply b", results[-1].result)
        last_call = calls[-1]["messages"]
        blocks = [block for m in last_call if isinstance(m["content"], list) for block in m["content"]]
        self.assertFalse([b for b in blocks if b.get("type") in ("tool_use", "tool_result")])
        self.assertEqual(["user", "user"], [m["role"] for m in last_call])
        self.assertNotEqual(second, cursor)
        self.assertNotEqual(first, cursor)

    def test_resume_continues_the_persisted_chain(self) -> None:
        provider = ScriptedProvider([text_turn("first reply"), text_turn("second reply")])

        async def first_visit():
            session = await create_session(self._options(provider))
            async with session:
                await _run(session, "remember 42")
                tip = session.current_parent_uuid
                session_id = session.session_id
            await _let_runtime_release()
            return session_id, tip

        session_id, tip = asyncio.run(first_visit())

        async def second_visit():
            session = await resume_session(session_id, self._options(provider))
            async with session:
                cursor = session.current_parent_uuid
                sent_uuid = await session.send("what number?")
                items = [item async for item in session.receive()]
            await _let_runtime_release()
            return cursor, sent_uuid, items

        cursor, sent_uuid, items = asyncio.run(second_visit())
        self.assertEqual(tip, cursor)
        self.assertEqual("system", items[0].type)
        self.assertEqual("second reply", items[-1].result)
        self.assertEqual(sent_uuid, items[1].parent_uuid)
        history = provider.calls[-1]["messages"]
        self.assertEqual(
            ["remember 42", "first reply", "what number?"],
            [m["content"][0]["text"] for m in history[:3]],
        )

    def test_resume_of_unknown_session_raises(self) -> None:
        async def scenario() -> None:
            with self.assertRaises(SessionNotFoundError):
                await resume_session("does-not-exist", self._options(ScriptedProvider()))
            await _let_runtime_release()

        asyncio.run(scenario())

    def test_prompt_returns_the_result(self) -> None:
        async def scenario() -> ResultMessage:
            result = await prompt("quick question", self._options(ScriptedProvider([text_turn("quick answer")])))
            await _let_runtime_release()
            return result

        result = asyncio.run(scenario())
        self.assertEqual("quick answer", result.result)
        self.assertEqual(1, result.num_turns)


if __name__ == "__main__":
    unittest.main()
