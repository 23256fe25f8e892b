"""Wires a bridge to a client-side bus over an in-process transport pair."""

from __future__ import annotations

import asyncio
from collections import defaultdict

from micro_x_agent_bridge.bootstrap import BridgeRuntime, build_bridge_runtime
from micro_x_agent_bridge.message_bus import MessageBus
from micro_x_agent_bridge.transport import DirectTransport


class BridgeHarness:
    def __init__(self, provider, *, tools=None, enable_subagents: bool = True, **overrides):
        self.runtime: BridgeRuntime = build_bridge_runtime(
            provider=provider,
            model="test-model",
            memory_db_path=":memory:",
            working_directory="/work",
            extra_tools=tools,
            enable_subagents=enable_subagents,
            **overrides,
        )
        client_side, bridge_side = DirectTransport.create_pair()
        self.runtime.bridge.bus.set_transport(bridge_side)
        self.client = MessageBus(client_side, name="client", request_timeout=5.0)
        self.events: dict[str, list] = defaultdict(list)
        self._done = asyncio.Condition()
        for name in ("message", "agent.progress", "session.done"):
            self.client.on_event(name, self._recorder(name))

    def _recorder(self, name: str):
        def record(data) -> None:
            self.events[name].append(data)
            if name == "session.done":
                asyncio.get_running_loop().create_task(self._notify())

        return record

    async def _notify(self) -> None:
        async with self._done:
            self._done.notify_all()

    async def initialize(self, **params) -> dict:
        return await self.client.request("session.initialize", params)

    async def send(self, session_id: str, text: str, **params) -> dict:
        return await self.client.request("session.send", {"sessionId": session_id, "message": text, **params})

    async def list_messages(self, session_id: str, *, include_sidechains: bool = False) -> list[dict]:
        result = await self.client.request(
            "session.messages.list", {"sessionId": session_id, "includeSidechains": include_sidechains}
        )
        return result["messages"]

    async def wait_for_done(self, count: int, timeout: float = 5.0) -> list[dict]:
        async def wait() -> None:
            async with self._done:
                await self._done.wait_for(lambda: len(self.events["session.done"]) >= count)

        await asyncio.wait_for(wait(), timeout)
        return self.events["session.done"]

    async def shutdown(self) -> None:
        await self.runtime.bridge.wait_idle()
        self.client.close()
        self.runtime.bridge.close()
        self.runtime.memory_store.close()
