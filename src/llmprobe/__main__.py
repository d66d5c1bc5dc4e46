"""llmprobe entry point — CLI argument parsing, config resolution, probe launch."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys

from llmprobe.config import ConfigError, LLMProbeConfig, load_config
from llmprobe.probe.types import NeedlePosition
from llmprobe.runner import NEEDLE_ALL, ProbeRequest, describe_plan, run_probes


def _get_version() -> str:
    """Return the installed package version, or fall back to the source version."""
    from importlib.metadata import PackageNotFoundError, version

    try:
        return f"llmprobe {version('llmprobe')}"
    except PackageNotFoundError:
        from llmprobe import __version__

        return f"llmprobe {__version__} (not installed as package)"


def _add_common_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--model",
        "-m",
        required=True,
        help="Target model ID",
    )
    parser.add_argument(
        "--url",
        help="Base URL of the OpenAI-compatible gateway (e.g., https://gateway.example.com/v1)",
    )
    parser.add_argument(
        "--api-key",
        help="API key for the gateway (prefer LLMPROBE_API_KEY or the config file)",
    )
    parser.add_argument(
        "--gateway",
        help="Label recorded for this gateway in trial logs (overrides [gateway] name)",
    )
    parser.add_argument(
        "--timeout",
        type=float,
        help="Per-request timeout in seconds (default: 30)",
    )
    parser.add_argument(
        "--config",
        "-c",
        help="Path to config.toml file",
    )
    parser.add_argument(
        "--json",
        action="store_true",
        help="Print results as JSON",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show the execution plan without making any API calls",
    )
    parser.add_argument(
        "--no-log",
        action="store_true",
        help="Do not write the per-trial log",
    )
    parser.add_argument(
        "--log-dir",
        metavar="PATH",
        help="Directory for per-trial logs (overrides config)",
    )
    parser.add_argument(
        "--save-result",
        action="store_true",
        help="Save the estimates under the result directory",
    )
    parser.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Enable verbose logging and print the trial history",
    )
    parser.add_argument(
        "--log-file",
        metavar="PATH",
        help="Write all log messages (DEBUG level) to a file. "
        "Useful for real-time monitoring with tail -f.",
    )


def _add_needle_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--needle",
        choices=[p.value for p in NeedlePosition] + [NEEDLE_ALL],
        help="Embed a fact at this position and check the model can retrieve it "
        "('all' probes every position)",
    )
    parser.add_argument(
        "--needle-fact",
        help="Fact sentence to embed (default: built-in Japanese fact)",
    )
    parser.add_argument(
        "--needle-answer",
        help="Text the answer must contain to count as retrieved",
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="llmprobe",
        description="llmprobe — discover the real context window and output token "
        "limits of an OpenAI-compatible LLM endpoint",
    )
    parser.add_argument(
        "--version",
        "-V",
        action="version",
        version=_get_version(),
    )
    sub = parser.add_subparsers(dest="command", required=True)

    both = sub.add_parser("probe", help="Probe context window and max output tokens")
    _add_common_arguments(both)
    only = both.add_mutually_exclusive_group()
    only.add_argument("--context-only", action="store_true", help="Probe only the context window")
    only.add_argument("--output-only", action="store_true", help="Probe only max output tokens")
    _add_needle_arguments(both)

    context = sub.add_parser("context", help="Probe the context window")
    _add_common_arguments(context)
    _add_needle_arguments(context)

    output = sub.add_parser("max-output", help="Probe max output tokens")
    _add_common_arguments(output)

    return parser


def _setup_logging(verbose: bool, log_file: str | None) -> None:
    level = logging.DEBUG if verbose else logging.WARNING
    logging.basicConfig(level=level, format="%(name)s: %(message)s")

    if log_file:
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(
            logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s")
        )
        logging.getLogger().addHandler(file_handler)
        logging.getLogger().setLevel(logging.DEBUG)


def _apply_overrides(config: LLMProbeConfig, args: argparse.Namespace) -> None:
    """CLI flags win over the config file and environment."""
    if args.url:
        config.gateway.url = args.url
    if args.api_key:
        config.gateway.api_key = args.api_key
    if args.gateway:
        config.gateway.name = args.gateway
    if args.timeout is not None:
        if args.timeout <= 0:
            raise ConfigError(f"--timeout must be > 0, got {args.timeout}")
        config.gateway.timeout = args.timeout
    if args.no_log:
        config.log.enabled = False
    if args.log_dir:
        config.log.dir = args.log_dir
    if args.save_result:
        config.result.save = True


def _build_request(args: argparse.Namespace, config: LLMProbeConfig) -> ProbeRequest:
    context = args.command in ("probe", "context")
    max_output = args.command in ("probe", "max-output")
    if args.command == "probe":
        if args.context_only:
            max_output = False
        if args.output_only:
            context = False
    return ProbeRequest(
        model=args.model,
        context=context,
        max_output=max_output,
        needle=getattr(args, "needle", None),
        needle_fact=getattr(args, "needle_fact", None) or "",
        needle_answer=getattr(args, "needle_answer", None) or "",
        json_output=args.json,
        verbose=args.verbose,
        save_result=config.result.save,
    )


async def _run(config: LLMProbeConfig, request: ProbeRequest) -> int:
    from llmprobe.inference.remote import RemoteProbeClient
    from llmprobe.storage import ResultStorage
    from llmprobe.trial_log import TrialLogger

    client = RemoteProbeClient(
        base_url=config.gateway.url,
        api_key=config.gateway.api_key,
        timeout=config.gateway.timeout,
        name=config.gateway.name,
    )
    try:
        return await run_probes(
            client,
            config,
            request,
            trial_logger=TrialLogger(config.log.dir, enabled=config.log.enabled),
            storage=ResultStorage(config.result.dir),
        )
    finally:
        await client.close()


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    _setup_logging(args.verbose, args.log_file)

    try:
        config = load_config(args.config)
        _apply_overrides(config, args)
    except ConfigError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 2

    request = _build_request(args, config)

    if args.dry_run:
        print(describe_plan(config, request))
        return 0

    if not config.gateway.url:
        print(
            "Error: no gateway URL. Use --url, LLMPROBE_BASE_URL, "
            "or [gateway] url in the config file.",
            file=sys.stderr,
        )
        return 2

    try:
        return asyncio.run(_run(config, request))
    except KeyboardInterrupt:
        print("\nInterrupted.", file=sys.stderr)
        return 130


if __name__ == "__main__":
    sys.exit(main())
