#!/usr/bin/env python3
"""
CircuitScope CLI - Main entry point.

Explore the internals of pretrained language models from the terminal:
- Detect previous-token, induction and duplicate-token attention heads
- Estimate the effect of ablating heads on the next-token distribution
- Build, save and apply steering vectors

Usage:
    # Interactive mode
    python main.py

    # Direct command-line mode
    python main.py analyze MODEL --text TEXT [OPTIONS]
    python main.py ablate MODEL --text TEXT (--heads L.H ... | --circuit TYPE)
    python main.py vectors {build,list,delete} ...
    python main.py generate MODEL --prompt TEXT [--vector NAME --strength S]
"""

import sys
import argparse
import logging
from pathlib import Path

from rich.console import Console
from rich.logging import RichHandler

# Add repository root to path
sys.path.append(str(Path(__file__).parent))

from commands import interpret, steer
from src.circuitscope.errors import CircuitScopeError
from src.interactive import interactive_main


def setup_logging(verbose: bool = False):
    """Route library logging through rich; DEBUG with --verbose."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(rich_tracebacks=True, show_path=verbose)],
        force=True,
    )
    # Keep third-party chatter out of the analysis output
    for noisy in ("transformers", "urllib3", "filelock", "huggingface_hub"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


def create_parser():
    """Create the main argument parser with subcommands."""
    parser = argparse.ArgumentParser(
        description="CircuitScope - circuit detection, ablation and steering for language models",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Show debug logging",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # ============================================================================
    # ANALYZE subcommand
    # ============================================================================
    analyze_parser = subparsers.add_parser(
        "analyze",
        help="Detect circuits and show next-token predictions for a prompt",
        description="Resolve attention, detect circuit heads and show predictions",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py analyze gpt2 --text "The cat sat on the mat. The cat sat on the"
  python main.py analyze gpt2 --text "The capital of France is" --logit-lens
        """,
    )
    interpret.setup_analyze_parser(analyze_parser)

    # ============================================================================
    # ABLATE subcommand
    # ============================================================================
    ablate_parser = subparsers.add_parser(
        "ablate",
        help="Estimate the effect of switching attention heads off",
        description="Heuristic ablation impact on the next-token distribution",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py ablate gpt2 --text "The cat sat on the mat. The cat" --heads 5.1 6.9
  python main.py ablate gpt2 --text "The cat sat on the mat. The cat" --circuit induction
        """,
    )
    interpret.setup_ablate_parser(ablate_parser)

    # ============================================================================
    # VECTORS subcommand
    # ============================================================================
    vectors_parser = subparsers.add_parser(
        "vectors",
        help="Build, list and delete steering vectors",
        description="Manage the steering vector library",
    )
    steer.setup_vectors_parser(vectors_parser)

    # ============================================================================
    # GENERATE subcommand
    # ============================================================================
    generate_parser = subparsers.add_parser(
        "generate",
        help="Generate text, optionally with a steering vector",
        description="Sample a continuation; with --vector, also show the steered one",
    )
    steer.setup_generate_parser(generate_parser)

    return parser


def main(argv=None):
    """Main entry point for the CircuitScope CLI."""
    parser = create_parser()
    args = parser.parse_args(argv)

    setup_logging(args.verbose)

    # Launch interactive mode if no command specified
    if args.command is None:
        interactive_main()
        return

    # ============================================================================
    # Route to the subcommand handler
    # ============================================================================
    try:
        args.func(args)
    except CircuitScopeError as e:
        Console(stderr=True).print(f"[red]Error:[/red] {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
