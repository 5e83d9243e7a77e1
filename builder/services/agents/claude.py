"""Claude Code CLI backend."""

import json
import logging
import shlex

from builder.core.config import settings
from builder.services.agents.base import AgentBackend, AgentContext, AgentExecutionResult
from builder.services.connectors import ConnectorConfig
from builder.services.sandbox import SandboxService

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "claude-sonnet-4-5-20250929"


def _tool_status(block: dict) -> str:
    name = block.get("name", "")
    path = (block.get("input") or {}).get("path") or (block.get("input") or {}).get(
        "file_path"
    )
    if name in ("Write", "Edit"):
        return f"Editing {path or 'file'}"
    if name == "Read":
        return f"Reading {path or 'file'}"
    if name == "Glob":
        return "Searching files"
    if name == "Bash":
        return "Running command"
    return f"Using {name}"


class StreamJsonParser:
    """Accumulates agent text from Claude's stream-json output.

    Output arrives in arbitrary chunks; only complete lines are parsed and
    lines that are not JSON are ignored.
    """

    def __init__(self, on_update=None):
        self.content = ""
        self.session_id: str | None = None
        self.completed = False
        self._buffer = ""
        self._on_update = on_update

    def feed(self, chunk: str) -> None:
        self._buffer += chunk
        *lines, self._buffer = self._buffer.split("\n")
        for line in lines:
            self._handle_line(line)

    def close(self) -> None:
        if self._buffer:
            self._handle_line(self._buffer)
            self._buffer = ""

    def _handle_line(self, line: str) -> None:
        line = line.strip()
        if not line or line.startswith("//"):
            return
        try:
            event = json.loads(line)
        except json.JSONDecodeError:
            return
        if not isinstance(event, dict):
            return

        if event.get("type") == "assistant":
            changed = False
            for block in (event.get("message") or {}).get("content") or []:
                if block.get("type") == "text" and block.get("text"):
                    self.content += block["text"]
                    changed = True
                elif block.get("type") == "tool_use":
                    self.content += f"\n\n{_tool_status(block)}\n\n"
                    changed = True
            if changed and self._on_update:
                self._on_update(self.content)
        elif event.get("type") == "result":
            if event.get("session_id"):
                self.session_id = event["session_id"]
            self.completed = True


class ClaudeBackend(AgentBackend):
    name = "claude"
    label = "Claude"

    def add_connectors(self, context: AgentContext, connectors: list[ConnectorConfig]):
        for connector in connectors:
            if connector.mode == "local":
                args = ["mcp", "add", connector.server_name]
                for key, value in connector.env.items():
                    args += ["--env", f"{key}={value}"]
                args += ["--", *shlex.split(connector.command or "")]
            else:
                args = [
                    "mcp",
                    "add",
                    "--transport",
                    "http",
                    connector.server_name,
                    connector.base_url or "",
                ]
                if connector.oauth_client_secret:
                    args += [
                        "--header",
                        f"Authorization: Bearer {connector.oauth_client_secret}",
                    ]
                if connector.oauth_client_id:
                    args += ["--header", f"X-Client-ID: {connector.oauth_client_id}"]

            result = SandboxService.run_command(context.handle, "claude", args)
            if result.success:
                context.task_logger.info(f"Added {connector.mode} MCP server {connector.name}")
            else:
                context.task_logger.info(f"Failed to add MCP server {connector.name}")

    def run(self, context: AgentContext) -> AgentExecutionResult:
        error = self.ensure_cli(
            context, "claude", "npm install -g @anthropic-ai/claude-code"
        )
        if error:
            return self.failure(error)

        if context.connectors:
            context.task_logger.info("Adding MCP servers")
            self.add_connectors(context, context.connectors)

        model = context.model or DEFAULT_MODEL
        args = [
            "--model",
            model,
            "--dangerously-skip-permissions",
            "--output-format",
            "stream-json",
            "--verbose",
        ]
        if context.resume:
            if context.session_id:
                args += ["--resume", context.session_id]
                context.task_logger.info("Resuming specific Claude chat session")
            else:
                args.append("--continue")
                context.task_logger.info("Resuming previous Claude conversation")
        args.append(context.instruction)

        context.task_logger.info(f"Executing Claude CLI with model {model}")
        context.task_logger.command(f"claude {' '.join(args[:-1])} <instruction>")

        parser = StreamJsonParser(on_update=context.on_output)
        execution = SandboxService.run_command(
            context.handle,
            "claude",
            args,
            timeout=context.timeout or settings.agent_timeout,
            on_stdout=parser.feed,
        )
        parser.close()
        if not parser.content and execution.stdout:
            # Output collected without streaming callbacks
            parser = StreamJsonParser(on_update=context.on_output)
            parser.feed(execution.stdout)
            parser.close()

        return self.completed(
            context,
            execution,
            agent_response=parser.content,
            session_id=parser.session_id or context.session_id,
        )
