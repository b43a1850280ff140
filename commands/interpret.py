"""
Circuit analysis and ablation commands.

analyze: run a prompt through a model, resolve its attention, detect
         previous-token / induction / duplicate-token heads and show the
         model's next-token predictions (optionally per layer).
ablate:  estimate what happens to the next-token distribution when heads
         are switched off, either listed explicitly or all heads of a
         detected circuit type.

Usage Examples:
---------------
    # Detect circuits in GPT-2 on a repeated sequence
    python main.py analyze gpt2 --text "The cat sat on the mat. The cat sat on the"

    # Include the logit lens and save the result as JSON
    python main.py analyze gpt2 --text "The capital of France is" \
        --logit-lens --output analysis.json

    # Show one head's attention grid
    python main.py analyze gpt2 --text "A B C A B C" --show-head 5.1

    # Ablate two heads
    python main.py ablate gpt2 --text "The cat sat on the mat. The cat" \
        --heads 5.1 6.9

    # Ablate every detected induction head
    python main.py ablate gpt2 --text "The cat sat on the mat. The cat" \
        --circuit induction

Ablation numbers are estimated from attention patterns without re-running
the model, and every report says so.
"""

import json
import logging
from pathlib import Path
from typing import Optional

from rich.console import Console

from src.circuitscope.errors import InvalidInputError
from src.circuitscope.interpretability.ablation import AblationMask
from src.circuitscope.interpretability.circuits import CircuitType
from src.circuitscope.interpretability.pipeline import AnalysisResult, CircuitAnalyzer
from src.circuitscope.interpretability.visualizations import (
    visualize_ablation,
    visualize_attention_pattern,
    visualize_attention_source,
    visualize_circuits,
    visualize_logit_lens,
    visualize_predictions,
    visualize_tokens,
)
from src.circuitscope.runtime import ModelSession


logger = logging.getLogger(__name__)

CIRCUIT_CHOICES = [t.value for t in CircuitType]


def load_session(model_id: str, device: Optional[str] = None, console: Optional[Console] = None) -> ModelSession:
    """Load a model, reporting progress on the console."""
    console = console or Console()
    console.print(f"\n[cyan]Loading model:[/cyan] {model_id}")
    with console.status("[bold blue]Loading weights..."):
        session = ModelSession.from_pretrained(model_id, device_type=device)
    console.print(
        f"[green]✓ Model loaded[/green] [dim]({session.num_layers} layers, "
        f"{session.num_heads} heads, device {session.device})[/dim]\n"
    )
    return session


def render_analysis(
    result: AnalysisResult,
    console: Console,
    max_circuits: int = 10,
    show_head: Optional[str] = None
):
    """Print everything an analysis produced."""
    console.print("[bold]Tokens:[/bold]")
    visualize_tokens(result.tokens, console)
    console.print()

    visualize_attention_source(result.attention, console)
    console.print()

    visualize_circuits(result.circuits, console, top_k=max_circuits)
    console.print()

    visualize_predictions(result.top_predictions, console)

    if result.logit_lens:
        visualize_logit_lens(result.logit_lens, result.text, console)

    if show_head and not result.attention.is_empty:
        (layer, head), = AblationMask.parse([show_head])
        AblationMask([(layer, head)]).validate(result.attention.num_layers, result.attention.num_heads)
        console.print()
        visualize_attention_pattern(
            result.tokens,
            result.attention.attention[layer, head],
            layer,
            head,
            console=console,
        )


def write_json(data: dict, path: str, console: Console):
    output_path = Path(path)
    output_path.parent.mkdir(parents=True, exist_ok=True)
    with open(output_path, 'w') as f:
        json.dump(data, f, indent=2)
    console.print(f"[green]✓ Saved to {output_path}[/green]")


# ============================================================================
# ANALYZE COMMAND
# ============================================================================

def cmd_analyze(args):
    """Analyze one prompt: attention source, circuits, predictions."""
    console = Console()

    session = load_session(args.model, args.device, console)
    try:
        analyzer = CircuitAnalyzer(session, top_k=args.top_k)
        result = analyzer.analyze(args.text, with_logit_lens=args.logit_lens)

        render_analysis(result, console, max_circuits=args.max_circuits, show_head=args.show_head)

        if args.output:
            write_json(result.to_dict(include_attention=args.include_attention), args.output, console)
    finally:
        session.close()


# ============================================================================
# ABLATE COMMAND
# ============================================================================

def cmd_ablate(args):
    """Estimate the effect of ablating heads on the next-token distribution."""
    console = Console()

    if not args.heads and not args.circuit:
        raise InvalidInputError("Specify --heads LAYER.HEAD ... or --circuit TYPE")

    session = load_session(args.model, args.device, console)
    try:
        analyzer = CircuitAnalyzer(session)
        result = analyzer.analyze(args.text)

        visualize_attention_source(result.attention, console)
        console.print()

        if args.heads:
            report = analyzer.ablate(result, heads=AblationMask.parse(args.heads))
        else:
            circuit_type = CircuitType(args.circuit)
            matching = [f for f in result.circuits if f.type == circuit_type]
            console.print(
                f"[cyan]{circuit_type.display_name}s detected:[/cyan] "
                f"{', '.join(f.head_label for f in matching) or 'none'}\n"
            )
            report = analyzer.ablate(result, circuit_type=circuit_type)

        visualize_ablation(report, console)

        if args.output and report is not None:
            write_json(report.to_dict(), args.output, console)
    finally:
        session.close()


# ============================================================================
# ARGUMENT PARSING
# ============================================================================

def _add_model_args(parser):
    parser.add_argument(
        'model',
        type=str,
        help='Hugging Face model id or local path (e.g. gpt2)'
    )
    parser.add_argument(
        '--text',
        type=str,
        required=True,
        help='Text to analyze'
    )
    parser.add_argument(
        '--device',
        type=str,
        choices=['cpu', 'cuda', 'mps'],
        default=None,
        help='Device to use (default: auto-detect)'
    )


def setup_analyze_parser(parser):
    """Arguments for the analyze command."""
    _add_model_args(parser)
    parser.add_argument(
        '--top-k',
        type=int,
        default=5,
        help='Number of next-token predictions to show (default: 5)'
    )
    parser.add_argument(
        '--max-circuits',
        type=int,
        default=10,
        help='Number of circuit findings to show (default: 10)'
    )
    parser.add_argument(
        '--logit-lens',
        action='store_true',
        help='Also show the top predictions at every layer'
    )
    parser.add_argument(
        '--show-head',
        type=str,
        default=None,
        metavar='LAYER.HEAD',
        help='Print the attention grid of one head (e.g. 5.1)'
    )
    parser.add_argument(
        '--output',
        type=str,
        default=None,
        help='Write the analysis as JSON to this path'
    )
    parser.add_argument(
        '--include-attention',
        action='store_true',
        help='Include the full attention tensor in the JSON output'
    )
    parser.set_defaults(func=cmd_analyze)


def setup_ablate_parser(parser):
    """Arguments for the ablate command."""
    _add_model_args(parser)
    target = parser.add_mutually_exclusive_group()
    target.add_argument(
        '--heads',
        type=str,
        nargs='+',
        metavar='LAYER.HEAD',
        help='Heads to ablate (e.g. 5.1 6.9 or L5H1)'
    )
    target.add_argument(
        '--circuit',
        type=str,
        choices=CIRCUIT_CHOICES,
        help='Ablate every detected head of this circuit type'
    )
    parser.add_argument(
        '--output',
        type=str,
        default=None,
        help='Write the ablation report as JSON to this path'
    )
    parser.set_defaults(func=cmd_ablate)
