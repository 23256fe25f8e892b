import asyncio
import sys

from dotenv import load_dotenv
from loguru import logger

from micro_x_agent_bridge.app_config import AppConfig, RuntimeEnv, load_json_config, parse_app_config, resolve_runtime_env
from micro_x_agent_bridge.bootstrap import build_bridge_runtime
from micro_x_agent_bridge.logging_config import setup_logging
from micro_x_agent_bridge.message_bus import MessageBus
from micro_x_agent_bridge.messages import ResultMessage
from micro_x_agent_bridge.output import StructuredOutputSink, TextOutputRenderer
from micro_x_agent_bridge.provider import create_provider
from micro_x_agent_bridge.sdk import SessionOptions, create_session, resume_session
from micro_x_agent_bridge.session import Session
from micro_x_agent_bridge.transport import StreamTransport


async def _serve_stdio(app: AppConfig, env: RuntimeEnv) -> None:
    transport = await StreamTransport.open_stdio()
    bus = MessageBus(transport, name="bridge")
    runtime = build_bridge_runtime(
        provider=create_provider(app.provider_name, env.provider_api_key),
        model=app.model,
        max_tokens=app.max_tokens,
        temperature=app.temperature,
        memory_db_path=app.memory_db_path,
        working_directory=app.working_directory,
        max_tool_result_chars=app.max_tool_result_chars,
        max_turns=app.max_turns,
        subagent_queue_size=app.subagent_queue_size,
        bus=bus,
    )
    logger.info("Serving bridge over stdio")
    try:
        await bus.wait_closed()
        await runtime.bridge.wait_idle()
    finally:
        runtime.bridge.close()
        runtime.memory_store.close()


async def _open_session(app: AppConfig, env: RuntimeEnv) -> Session:
    options = SessionOptions.from_app_config(app, env)
    if app.resume_session_id:
        return await resume_session(app.resume_session_id, options)
    return await create_session(options, session_id=app.configured_session_id)


async def _run_message(session: Session, text: str, write) -> ResultMessage | None:
    await session.send(text)
    result = None
    async for item in session.receive():
        write(item)
        if isinstance(item, ResultMessage):
            result = item
    return result


async def main() -> None:
    load_dotenv()

    app = parse_app_config(load_json_config())
    log_descriptions = setup_logging(
        level=app.log_level,
        consumers=app.log_consumers,
        quiet=app.structured_output,
    )

    env = resolve_runtime_env(app.provider_name)
    if not env.provider_api_key:
        logger.error(f"{env.provider_env_var} environment variable is required.")
        sys.exit(1)

    if app.serve_stdio:
        await _serve_stdio(app, env)
        return

    if app.structured_output:
        write = StructuredOutputSink(enabled=True).write
    else:
        write = TextOutputRenderer().write

    one_shot = " ".join(sys.argv[1:]).strip()

    session = await _open_session(app, env)
    async with session:
        if one_shot:
            result = await _run_message(session, one_shot, write)
            if result is None or result.is_error:
                sys.exit(1)
            return

        if not app.structured_output:
            print("micro-x-agent-bridge (type 'exit' to quit)")
            print(f"Session: {session.session_id}")
            if log_descriptions:
                print(f"Logging: {', '.join(log_descriptions)}")
            print()

        while True:
            try:
                user_input = input("" if app.structured_output else "you> ")
            except (EOFError, KeyboardInterrupt):
                break

            trimmed = user_input.strip()
            if trimmed in ("exit", "quit"):
                break
            if not trimmed:
                continue

            try:
                await _run_message(session, trimmed, write)
            except Exception as ex:
                logger.error(f"Unhandled error: {ex}")


def run() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    run()
