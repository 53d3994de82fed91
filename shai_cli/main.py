"""
shai entry point.

Usage:
    shai repl                               # interactive loop
    echo "why is the disk full?" | shai run # one headless turn
    shai run --trace "first step" | shai run --trace "next step"
    shai serve --port 8080                  # HTTP gateway
    shai hook --command "make" --exit_code 2 --output "..."

Every command reads ~/.shai/.env and ~/.shai/config.yaml first; flags
override both.
"""

import logging
import sys
from logging.handlers import RotatingFileHandler
from typing import Optional

import fire

from shai_cli.config import build_agent_config, build_server_config, load_config, load_env, shai_home

logger = logging.getLogger(__name__)

_NOISY_LOGGERS = ("openai", "openai._base_client", "httpx", "httpcore", "asyncio")


def setup_logging(verbose: bool = False, quiet: bool = False, log_file: bool = False) -> None:
    """Configure root logging once. Logs always go to stderr."""
    if verbose:
        logging.basicConfig(
            level=logging.DEBUG,
            format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
            datefmt="%H:%M:%S",
            stream=sys.stderr,
        )
        for name in _NOISY_LOGGERS:
            logging.getLogger(name).setLevel(logging.WARNING)
        logger.info("Verbose logging enabled (third-party library logs suppressed)")
    else:
        logging.basicConfig(
            level=logging.WARNING if quiet else logging.INFO,
            format="%(asctime)s - %(levelname)s - %(message)s",
            datefmt="%H:%M:%S",
            stream=sys.stderr,
        )
        for name in _NOISY_LOGGERS:
            logging.getLogger(name).setLevel(logging.ERROR)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)

    if log_file:
        log_dir = shai_home() / "logs"
        log_dir.mkdir(parents=True, exist_ok=True)
        handler = RotatingFileHandler(
            log_dir / "shai.log", maxBytes=5 * 1024 * 1024, backupCount=3, encoding="utf-8",
        )
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))
        logging.getLogger().addHandler(handler)


def _agent_config(model=None, provider=None, base_url=None, max_turns=None, tools=None, config=None):
    load_env()
    cfg = load_config(config)
    return cfg, build_agent_config(
        cfg, model=model, provider=provider, base_url=base_url, max_turns=max_turns, tools=tools,
    )


def run(
    prompt: Optional[str] = None,
    trace: bool = False,
    model: Optional[str] = None,
    provider: Optional[str] = None,
    base_url: Optional[str] = None,
    max_turns: Optional[int] = None,
    tools: Optional[str] = None,
    config: Optional[str] = None,
    quiet: bool = False,
    verbose: bool = False,
):
    """
    Answer one question headlessly.

    Args:
        prompt: Question; combined with piped stdin, or continues a piped trace.
        trace: Write the conversation trace to stdout for chaining.
        model: Model name (overrides config.yaml / SHAI_MODEL).
        provider: Provider id or alias (openai, openrouter, ollama, mistral, ovh, custom).
        base_url: OpenAI-compatible endpoint.
        max_turns: Model calls allowed per turn.
        tools: Comma-separated tool names to offer (default: all).
        config: Path to a config.yaml.
        quiet: No progress lines on stderr.
        verbose: Debug logging.
    """
    from shai_cli.headless import run_headless

    setup_logging(verbose=verbose, quiet=True)
    _, agent_config = _agent_config(model, provider, base_url, max_turns, tools, config)
    sys.exit(run_headless(agent_config, prompt, trace=trace, quiet=quiet))


def repl(
    model: Optional[str] = None,
    provider: Optional[str] = None,
    base_url: Optional[str] = None,
    max_turns: Optional[int] = None,
    config: Optional[str] = None,
    verbose: bool = False,
    sudo: bool = False,
):
    """Interactive terminal loop. ``--sudo`` runs tools without asking first."""
    from shai_cli.repl import run_repl

    setup_logging(verbose=verbose, quiet=not verbose, log_file=True)
    _, agent_config = _agent_config(model, provider, base_url, max_turns, None, config)
    sys.exit(run_repl(agent_config, sudo=sudo))


def serve(
    host: Optional[str] = None,
    port: Optional[int] = None,
    ephemeral: Optional[bool] = None,
    max_sessions: Optional[int] = None,
    model: Optional[str] = None,
    provider: Optional[str] = None,
    base_url: Optional[str] = None,
    config: Optional[str] = None,
    verbose: bool = False,
):
    """
    Run the HTTP gateway.

    Args:
        host: Bind address (default 127.0.0.1, or SHAI_HTTP_HOST).
        port: Port (default 8080, or SHAI_HTTP_PORT).
        ephemeral: Tear down every session after its request.
        max_sessions: Concurrent session limit.
    """
    from gateway.server import start_server

    setup_logging(verbose=verbose, log_file=True)
    cfg, agent_config = _agent_config(model, provider, base_url, None, None, config)
    server_config = build_server_config(cfg, host=host, port=port, ephemeral=ephemeral,
                                        max_sessions=max_sessions)
    start_server(server_config, agent_config)


def hook(command: str, exit_code: int, output: str = "", model: Optional[str] = None,
         config: Optional[str] = None):
    """Suggest a fix for a failed shell command (called by the shell integration)."""
    from shai_cli.shell_hook import run_hook

    setup_logging(quiet=True)
    _, agent_config = _agent_config(model, None, None, None, None, config)
    sys.exit(run_hook(agent_config, command, exit_code, output))


COMMANDS = {
    "run": run,
    "repl": repl,
    "serve": serve,
    "hook": hook,
}


def main():
    fire.Fire(COMMANDS)


if __name__ == "__main__":
    main()
