"""OpenAI Codex CLI backend."""

import json
import re
import shlex

from builder.core.config import settings
from builder.services.agents.base import AgentBackend, AgentContext, AgentExecutionResult
from builder.services.connectors import ConnectorConfig
from builder.services.credentials import current_credential_env
from builder.services.sandbox import HOME_DIR, SandboxService

DEFAULT_MODEL = "openai/gpt-4o"
CONFIG_PATH = f"{HOME_DIR}/.codex/config.toml"

_SESSION_RE = re.compile(r"(?:session[_\s-]?id|Session)[:\s]+([a-f0-9-]+)", re.IGNORECASE)


def _toml_str(value: str) -> str:
    return json.dumps(value)


def build_codex_config(
    model: str, gateway_key: bool, connectors: list[ConnectorConfig]
) -> str:
    """Render ~/.codex/config.toml for a provider and set of connectors."""
    lines = []
    if any(c.mode == "remote" for c in connectors):
        lines.append("experimental_use_rmcp_client = true")

    provider = "vercel-ai-gateway" if gateway_key else "openai"
    lines += [
        f"model = {_toml_str(model)}",
        f"model_provider = {_toml_str(provider)}",
        "",
        f"[model_providers.{provider}]",
    ]
    if gateway_key:
        lines += [
            'name = "Vercel AI Gateway"',
            f"base_url = {_toml_str(settings.ai_gateway_base_url)}",
            'env_key = "AI_GATEWAY_API_KEY"',
            'wire_api = "chat"',
        ]
    else:
        lines += [
            'name = "OpenAI"',
            'base_url = "https://api.openai.com/v1"',
            'env_key = "AI_GATEWAY_API_KEY"',
            'wire_api = "responses"',
        ]

    for connector in connectors:
        lines += ["", f"[mcp_servers.{connector.server_name}]"]
        if connector.mode == "local":
            executable, *args = shlex.split(connector.command or "") or [""]
            lines.append(f"command = {_toml_str(executable)}")
            if args:
                lines.append(f"args = [{', '.join(_toml_str(a) for a in args)}]")
            if connector.env:
                pairs = ", ".join(
                    f"{_toml_str(k)} = {_toml_str(v)}" for k, v in connector.env.items()
                )
                lines.append(f"env = {{ {pairs} }}")
        else:
            lines.append(f"url = {_toml_str(connector.base_url or '')}")
            if connector.oauth_client_secret:
                lines.append(f"bearer_token = {_toml_str(connector.oauth_client_secret)}")

    return "\n".join(lines) + "\n"


class CodexBackend(AgentBackend):
    name = "codex"
    label = "Codex"

    def run(self, context: AgentContext) -> AgentExecutionResult:
        error = self.ensure_cli(context, "codex", "npm install -g @openai/codex")
        if error:
            return self.failure(error)

        env = current_credential_env()
        api_key = env.get("AI_GATEWAY_API_KEY") or env.get("OPENAI_API_KEY")
        if not api_key:
            return self.failure(
                "AI Gateway API key not found. Set AI_GATEWAY_API_KEY in the environment."
            )
        if not api_key.startswith(("vck_", "sk-")):
            return self.failure(
                "Invalid AI Gateway API key format. Expected to start with 'vck_' or 'sk-'."
            )

        config = build_codex_config(
            context.model or DEFAULT_MODEL,
            gateway_key=api_key.startswith("vck_"),
            connectors=context.connectors,
        )
        SandboxService.run_command(context.handle, "mkdir", ["-p", f"{HOME_DIR}/.codex"])
        SandboxService.write_file(context.handle, CONFIG_PATH, config)
        if context.connectors:
            context.task_logger.info(f"Configured {len(context.connectors)} MCP servers")

        if context.resume:
            args = ["resume", "--last"]
            context.task_logger.info("Resuming previous Codex conversation")
        else:
            args = ["exec", "--dangerously-bypass-approvals-and-sandbox"]
        context.task_logger.command(f"codex {' '.join(args)} <instruction>")

        execution = SandboxService.run_command(
            context.handle,
            "codex",
            [*args, context.instruction],
            timeout=context.timeout or settings.agent_timeout,
            envs={"AI_GATEWAY_API_KEY": api_key, "HOME": HOME_DIR, "CI": "true"},
        )

        session_id = context.session_id
        match = _SESSION_RE.search(execution.stdout or "")
        if match:
            session_id = match.group(1)

        if context.on_output and execution.stdout:
            context.on_output(execution.stdout)

        return self.completed(context, execution, session_id=session_id)
