import asyncio
import unittest

from micro_x_agent_bridge.errors import (
    HandlerConflictError,
    HandlerExecutionError,
    RequestTimeoutError,
    SessionNotFoundError,
    TransportClosedError,
    UnknownHandlerError,
)
from micro_x_agent_bridge.message_bus import MessageBus
from micro_x_agent_bridge.transport import DirectTransport


def _connected_pair(request_timeout: float | None = None) -> tuple[MessageBus, MessageBus]:
    left, right = DirectTransport.create_pair()
    return (
        MessageBus(left, name="client", request_timeout=request_timeout),
        MessageBus(right, name="server"),
    )


class MessageBusRequestTests(unittest.TestCase):
    def test_request_resolves_with_handler_result(self) -> None:
        async def scenario():
            client, server = _connected_pair()
            server.register_handler("add", lambda params: params["a"] + params["b"])

            async def slow_echo(params):
                await asyncio.sleep(0)
                return params

            server.register_handler("echo", slow_echo)
            return await client.request("add", {"a": 2, "b": 3}), await client.request("echo", "hi")

        self.assertEqual((5, "hi"), asyncio.run(scenario()))

    def test_registering_same_method_twice_conflicts(self) -> None:
        bus = MessageBus()
        bus.register_handler("m", lambda p: None)
        with self.assertRaises(HandlerConflictError):
            bus.register_handler("m", lambda p: None)

    def test_unknown_method_fails_with_unknown_handler(self) -> None:
        async def scenario() -> None:
            client, _ = _connected_pair()
            with self.assertRaises(UnknownHandlerError) as ctx:
                await client.request("missing", {})
            self.assertEqual("missing", ctx.exception.method)

        asyncio.run(scenario())

    def test_handler_failure_becomes_failure_response(self) -> None:
        async def scenario() -> None:
            client, server = _connected_pair()

            def boom(params):
                raise ValueError("bad input")

            server.register_handler("boom", boom)
            server.register_handler("ok", lambda p: "fine")
            with self.assertRaises(HandlerExecutionError) as ctx:
                await client.request("boom")
            self.assertEqual("ValueError", ctx.exception.cause_type)
            self.assertIn("bad input", str(ctx.exception))
            # The read loop keeps serving after a handler failure.
            self.assertEqual("fine", await client.request("ok"))

        asyncio.run(scenario())

    def test_bridge_errors_keep_their_kind_across_the_wire(self) -> None:
        async def scenario() -> None:
            client, server = _connected_pair()

            def lookup(params):
                raise SessionNotFoundError("abc")

            server.register_handler("lookup", lookup)
            with self.assertRaises(SessionNotFoundError):
                await client.request("lookup")

        asyncio.run(scenario())

    def test_responses_settle_out_of_order(self) -> None:
        async def scenario() -> list[str]:
            client, server = _connected_pair()
            release_first = asyncio.Event()
            settled: list[str] = []

            async def first(params):
                await release_first.wait()
                return "first"

            async def second(params):
                return "second"

            server.register_handler("first", first)
            server.register_handler("second", second)

            f1 = await client.dispatch("first")
            f2 = await client.dispatch("second")
            f1.add_done_callback(lambda f: settled.append(f.result()))
            f2.add_done_callback(lambda f: settled.append(f.result()))
            await f2
            release_first.set()
            await f1
            return settled

        self.assertEqual(["second", "first"], asyncio.run(scenario()))

    def test_close_rejects_pending_requests(self) -> None:
        async def scenario() -> None:
            client, server = _connected_pair()
            never = asyncio.Event()

            async def hang(params):
                await never.wait()

            server.register_handler("hang", hang)
            future = await client.dispatch("hang")
            client.close()
            with self.assertRaises(TransportClosedError):
                await future
            with self.assertRaises(TransportClosedError):
                await client.request("hang")
            client.close()

        asyncio.run(scenario())

    def test_peer_close_rejects_pending_requests(self) -> None:
        async def scenario() -> None:
            client, server = _connected_pair()
            never = asyncio.Event()

            async def hang(params):
                await never.wait()

            server.register_handler("hang", hang)
            future = await client.dispatch("hang")
            await asyncio.sleep(0)
            server.close()
            with self.assertRaises(TransportClosedError):
                await future
            await client.wait_closed()

        asyncio.run(scenario())

    def test_request_timeout(self) -> None:
        async def scenario() -> None:
            client, server = _connected_pair(request_timeout=0.05)
            never = asyncio.Event()

            async def hang(params):
                await never.wait()

            server.register_handler("hang", hang)
            with self.assertRaises(RequestTimeoutError) as ctx:
                await client.request("hang")
            self.assertEqual("hang", ctx.exception.method)

        asyncio.run(scenario())

    def test_request_without_transport_raises(self) -> None:
        async def scenario() -> None:
            with self.assertRaises(TransportClosedError):
                await MessageBus().request("x")

        asyncio.run(scenario())


class MessageBusEventTests(unittest.TestCase):
    def test_subscribers_run_in_subscription_order_and_events_in_arrival_order(self) -> None:
        async def scenario() -> list:
            client, server = _connected_pair()
            seen: list = []
            client.on_event("tick", lambda data: seen.append(("a", data)))
            client.on_event("tick", lambda data: seen.append(("b", data)))
            client.on_event("other", lambda data: seen.append(("other", data)))
            server.register_handler("flush", lambda p: None)
            await server.emit_event("tick", 1)
            await server.emit_event("tick", 2)
            await client.request("flush")
            return seen

        self.assertEqual([("a", 1), ("b", 1), ("a", 2), ("b", 2)], asyncio.run(scenario()))

    def test_unsubscribe_and_failing_subscriber(self) -> None:
        async def scenario() -> list:
            client, server = _connected_pair()
            seen: list = []

            def broken(data):
                raise RuntimeError("subscriber bug")

            client.on_event("tick", broken)
            unsubscribe = client.on_event("tick", seen.append)
            server.register_handler("flush", lambda p: None)
            await server.emit_event("tick", 1)
            await client.request("flush")
            unsubscribe()
            unsubscribe()
            await server.emit_event("tick", 2)
            await client.request("flush")
            return seen

        self.assertEqual([1], asyncio.run(scenario()))

    def test_emit_on_closed_bus_raises(self) -> None:
        async def scenario() -> None:
            client, _ = _connected_pair()
            client.close()
            with self.assertRaises(TransportClosedError):
                await client.emit_event("tick", 1)

        asyncio.run(scenario())


if __name__ == "__main__":
    unittest.main()
