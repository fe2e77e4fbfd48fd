"""
Command line entry point: stream one reply to stdout.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys

from velvet.config import Configuration
from velvet.llm.client import StreamingCompletionClient
from velvet.logging_utils import configure_logging, operation_context


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="velvet", description="Stream a chat completion to stdout."
    )
    parser.add_argument("prompt", help="User message to send")
    parser.add_argument("--provider", help="openai or openrouter")
    parser.add_argument("--model", help="Model identifier")
    parser.add_argument("--system", help="Persona instruction (system prompt)")
    parser.add_argument("--config", help="Path to a YAML configuration file")
    return parser


class StdoutRenderer:
    """Prints only the part of the cumulative text not yet shown."""

    def __init__(self, stream=None) -> None:
        self.stream = stream or sys.stdout
        self._shown = 0

    def update(self, cumulative_text: str) -> None:
        self.stream.write(cumulative_text[self._shown:])
        self.stream.flush()
        self._shown = len(cumulative_text)

    def finish(self, final_text: str) -> None:
        self.update(final_text)
        self.stream.write("\n")


async def run(args: argparse.Namespace) -> int:
    config = Configuration(args.config)
    configure_logging(config.get_logging_config()["level"])

    settings = config.get_default_settings()
    provider = args.provider or settings.api_provider
    model = args.model or settings.model

    api_key = config.api_key_for(provider)

    renderer = StdoutRenderer()
    errors: list[str] = []

    async with (
        operation_context(
            "cli_completion", context={"provider": provider, "model": model}
        ),
        StreamingCompletionClient(**config.get_client_options()) as client,
    ):
        result = await client.stream_completion(
            api_key,
            provider,
            model,
            [{"role": "user", "content": args.prompt}],
            system_prompt=args.system,
            on_update=renderer.update,
            on_finish=renderer.finish,
            on_error=errors.append,
        )

    if not result.ok:
        print(f"Generation Failed: {errors[0] if errors else result.error}",
              file=sys.stderr)
        return 1
    return 0


def main() -> None:
    args = build_parser().parse_args()
    try:
        sys.exit(asyncio.run(run(args)))
    except KeyboardInterrupt:
        logging.info("Keyboard interrupt received, shutting down...")
        sys.exit(130)


if __name__ == "__main__":
    main()
