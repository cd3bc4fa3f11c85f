"""Relay entry point.

Runs one session turn from the command line and streams the reply:

    relay "summarize the README"           # session "cli"
    RELAY_SESSION=work relay "next step"
"""

from __future__ import annotations

import asyncio
import logging
import os
import sys

from relay.config import Settings
from relay.events import RunCallbacks
from relay.models import RunResult
from relay.runner import GatewayRunner

logger = logging.getLogger(__name__)


def _print_delta(text: str) -> None:
    sys.stdout.write(text)
    sys.stdout.flush()


def _print_tool_call(name: str, args: object) -> None:
    sys.stderr.write(f"\n[tool] {name} {args}\n")


async def run_prompt(settings: Settings, session_id: str, prompt: str) -> RunResult:
    runner = GatewayRunner(settings)
    await runner.start()
    try:
        callbacks = RunCallbacks(
            on_text_delta=_print_delta,
            on_tool_call=_print_tool_call,
            on_finish=lambda _text: sys.stdout.write("\n"),
            on_error=lambda err: sys.stderr.write(f"\nerror: {err}\n"),
        )
        return await runner.run_session_turn(session_id, prompt, callbacks)
    finally:
        await runner.close()


def main() -> None:
    """Entry point: parse settings, run one turn."""
    settings = Settings()

    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )

    prompt = " ".join(sys.argv[1:]).strip() or sys.stdin.read().strip()
    if not prompt:
        sys.stderr.write("usage: relay PROMPT\n")
        raise SystemExit(2)

    session_id = os.environ.get("RELAY_SESSION", "cli")
    logger.info("Model: %s/%s via %s", settings.provider, settings.model, settings.model_api)
    result = asyncio.run(run_prompt(settings, session_id, prompt))
    if result.error is not None:
        raise SystemExit(130 if result.aborted else 1)


if __name__ == "__main__":
    main()
