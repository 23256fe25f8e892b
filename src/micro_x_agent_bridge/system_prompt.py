from datetime import date


def get_system_prompt(*, cwd: str, model: str, tool_names: list[str]) -> str:
    tools_line = ", ".join(tool_names) if tool_names else "none"
    return f"""You are a helpful assistant running inside an agent loop.

Working directory: {cwd}
Model: {model}
Today's date: {date.today().isoformat()}
Available tools: {tools_line}

When a task is large and self-contained, you may delegate it with the Task tool; its
report comes back as the tool result. Keep final answers short and direct."""
