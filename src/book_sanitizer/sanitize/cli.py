"""CLI for sanitizing OCR'd book excerpts.

Reads every .txt file of the input directory, splits it into token-bounded
chunks, sends each chunk to every configured LLM backend, and writes one YAML
file per (file, configuration) under the output directory.

Examples:
    # One local endpoint
    book-sanitize -i books/ -o sanitized/ --config llama.yaml

    # Two endpoints in parallel, smaller chunks, debug output on the console
    book-sanitize -i books/ -o sanitized/ --config llama.yaml colab.yaml \\
        --max-tokens 300 -v

Exit codes:
    0   Run completed (individual chunk failures are recorded in the output)
    1   A configuration aborted on a fatal error before sanitizing anything,
        or the input directory / a configuration file is unusable
    130 Interrupted
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
import time
import traceback
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING

from book_sanitizer.config import RunSettings, load_config

if TYPE_CHECKING:
    from book_sanitizer.sanitize.configuration import BackendConfiguration
    from book_sanitizer.sanitize.dispatcher import RunReport

# =============================================================================
# LOGGING SETUP
# =============================================================================

# Package logger; module loggers propagate to it
logger = logging.getLogger("book_sanitizer")


def _setup_logging(log_dir: Path | None = None, verbose: bool = False) -> Path:
    """Configure logging with file and console handlers.

    Args:
        log_dir: Directory for log files (default: ./logs/)
        verbose: If True, set console to DEBUG level

    Returns:
        Path to the log file
    """
    if log_dir is None:
        log_dir = Path("logs")
    log_dir.mkdir(parents=True, exist_ok=True)

    # Create timestamped log file
    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    log_file = log_dir / f"book_sanitize_{timestamp}.log"

    logger.setLevel(logging.DEBUG)

    # File handler - captures everything with full detail
    file_handler = logging.FileHandler(log_file, encoding="utf-8")
    file_handler.setLevel(logging.DEBUG)
    file_formatter = logging.Formatter(
        "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    file_handler.setFormatter(file_formatter)

    # Console handler - less verbose unless --verbose flag
    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(logging.DEBUG if verbose else logging.WARNING)
    console_formatter = logging.Formatter("%(levelname)s: %(message)s")
    console_handler.setFormatter(console_formatter)

    # Clear existing handlers and add new ones
    for handler in logger.handlers:
        handler.close()
    logger.handlers.clear()
    logger.addHandler(file_handler)
    logger.addHandler(console_handler)

    logger.info(f"Logging initialized - log file: {log_file}")
    return log_file


def _log_exception(msg: str, exc: Exception) -> None:
    """Log an exception with full traceback to file.

    Args:
        msg: Context message describing what failed
        exc: The exception that was raised
    """
    logger.error(f"{msg}: {type(exc).__name__}: {exc}")
    logger.debug(f"Traceback:\n{traceback.format_exc()}")


def _create_parser() -> argparse.ArgumentParser:
    """Create argument parser."""
    defaults = load_config()

    parser = argparse.ArgumentParser(
        prog="book-sanitize",
        description="Clean up excerpts from books formatted as txt",
    )
    parser.add_argument(
        "-i",
        "--input",
        type=Path,
        required=True,
        help="Directory of .txt files to sanitize",
    )
    parser.add_argument(
        "-o",
        "--output",
        type=Path,
        required=True,
        help="Directory where .yaml results are written (one subdirectory per configuration)",
    )
    parser.add_argument(
        "--config",
        type=Path,
        nargs="+",
        required=True,
        metavar="FILE",
        help="One or more backend configuration files; each runs independently",
    )
    parser.add_argument(
        "--max-tokens",
        type=int,
        default=defaults.max_chunk_tokens,
        help=f"Maximum tokens per chunk (default: {defaults.max_chunk_tokens})",
    )
    parser.add_argument(
        "--encoding",
        default=defaults.encoding,
        help=f"tiktoken encoding used to size chunks (default: {defaults.encoding})",
    )
    parser.add_argument(
        "--log-dir",
        type=Path,
        default=Path(defaults.log_dir),
        help=f"Directory for log files (default: {defaults.log_dir}/)",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Show debug output on the console",
    )
    return parser


async def _sanitize(settings: RunSettings, configurations: list[BackendConfiguration]) -> RunReport:
    from book_sanitizer.sanitize.backend import HttpBackendClient
    from book_sanitizer.sanitize.dispatcher import Dispatcher
    from book_sanitizer.sanitize.yaml_writer import YamlDocumentWriter

    async with HttpBackendClient() as client:
        dispatcher = Dispatcher(
            settings,
            configurations,
            client,
            YamlDocumentWriter(settings.output_dir),
        )
        return await dispatcher.run_directory()


def _print_report(report: RunReport, elapsed: float) -> None:
    print()
    print(f"Complete:  {report.documents} file(s) in {elapsed:.1f}s")
    for configuration in report.configurations:
        status = "ABORTED" if configuration.aborted else "ok"
        print(
            f"  {configuration.configuration_id}: {status}, "
            f"{configuration.sanitized:,} sanitized, {configuration.failed:,} failed, "
            f"{configuration.documents_written} file(s) written"
        )
        if configuration.abort_reason:
            print(f"    reason: {configuration.abort_reason}")
        if configuration.output_errors:
            print(f"    output errors: {configuration.output_errors} file(s) not written")


def _run_sanitize_process(args: argparse.Namespace) -> int:
    """Run the sanitizer over the input directory.

    Args:
        args: Parsed command line arguments

    Returns:
        Exit code (0 for success, 1 for error, 130 for interrupt)
    """
    # Import here to speed up --help
    from dotenv import load_dotenv

    from book_sanitizer.sanitize.configuration import ConfigurationError, load_configurations
    from book_sanitizer.sanitize.documents import discover_documents

    input_dir: Path = args.input
    output_dir: Path = args.output

    _setup_logging(args.log_dir, args.verbose)

    # Validate input directory
    if not input_dir.is_dir():
        print(f"Error: Input directory does not exist: {input_dir}")
        return 1

    if args.max_tokens <= 0:
        print("Error: --max-tokens must be positive")
        return 1

    # Credentials referenced by api_key_env may live in a .env file
    load_dotenv()

    try:
        configurations = load_configurations(args.config)
    except ConfigurationError as e:
        _log_exception("Configuration load error", e)
        print(f"Error: {e}")
        return 1

    input_files = discover_documents(input_dir)
    if not input_files:
        print("\nNo .txt files found in input directory")
        return 1

    settings = RunSettings(
        input_dir=input_dir,
        output_dir=output_dir,
        max_chunk_tokens=args.max_tokens,
        encoding=args.encoding,
    )

    # Print header
    print("Book Sanitizer")
    print("=" * 40)
    print(f"Input:     {input_dir}")
    print(f"Output:    {output_dir}")
    print(f"Files:     {len(input_files)}")
    print(f"Max:       {settings.max_chunk_tokens} tokens per chunk")
    for configuration in configurations:
        print(
            f"Backend:   {configuration.name} ({configuration.backend}, "
            f"{configuration.model}, concurrency {configuration.concurrency})"
        )

    start_time = time.perf_counter()
    try:
        report = asyncio.run(_sanitize(settings, configurations))
    except KeyboardInterrupt:
        print("\n\nInterrupted")
        return 130

    _print_report(report, time.perf_counter() - start_time)
    for configuration in report.configurations:
        if configuration.aborted_without_output:
            logger.error(
                "Configuration %s aborted before producing output: %s",
                configuration.configuration_id,
                configuration.abort_reason,
            )
        if configuration.output_errors:
            logger.error(
                "Configuration %s failed to write %d file(s)",
                configuration.configuration_id,
                configuration.output_errors,
            )
    return report.exit_code


def main() -> None:
    """Run the sanitizer."""
    parser = _create_parser()
    args = parser.parse_args()
    exit_code = _run_sanitize_process(args)
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
