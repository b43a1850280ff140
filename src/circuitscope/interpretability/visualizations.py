"""
Terminal Visualizations for Circuit Analysis

Rich-based renderers for every result the analysis pipeline produces. Each
function takes plain result objects and an optional Console, so the CLI, the
interactive menu and tests (with a recording console) share them.

Visualization Types:
--------------------
1. **Attention source badge**: where the attention numbers came from
2. **Circuit findings**: ranked table of heads with score and confidence
3. **Predictions / logit lens**: top next tokens, overall and per layer
4. **Attention pattern**: one head's matrix as a grid
5. **Ablation report**: before/after comparison with the heuristic caveat
6. **Steering**: saved vectors and steered vs unsteered generations

Colors follow one rule throughout: green = strong/trustworthy,
yellow = moderate/approximate, red or dim = weak/unreliable.
"""

from typing import List, Optional, Sequence

import torch
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from src.circuitscope.interpretability.ablation import AblationReport, ImpactLevel
from src.circuitscope.interpretability.attention_source import SOURCE_INFO, ResolvedAttention
from src.circuitscope.interpretability.circuits import CircuitFinding, Confidence
from src.circuitscope.interpretability.logit_lens import LayerPredictions, Prediction, find_convergence_layer
from src.circuitscope.interpretability.steering import SteeringVector
from src.circuitscope.outputs import GenerationResult


CONFIDENCE_STYLES = {
    Confidence.HIGH: "bright_green",
    Confidence.MEDIUM: "yellow",
    Confidence.LOW: "dim",
}

IMPACT_STYLES = {
    ImpactLevel.HIGH: "bold red",
    ImpactLevel.MEDIUM: "yellow",
    ImpactLevel.LOW: "green",
}


def _prob_color(prob: float) -> str:
    if prob > 0.5:
        return "bright_green"
    elif prob > 0.3:
        return "green"
    elif prob > 0.1:
        return "yellow"
    return "white"


def visualize_tokens(tokens: Sequence[str], console: Optional[Console] = None):
    """Print tokens with their positions, e.g. [0]The [1] cat."""
    if console is None:
        console = Console()

    text = Text()
    for i, token in enumerate(tokens):
        text.append(f"[{i}]", style="dim")
        text.append(repr(token)[1:-1], style="bold cyan")
        text.append(" ")
    console.print(text)


def visualize_attention_source(resolved: ResolvedAttention, console: Optional[Console] = None):
    """
    Badge naming the attention source, its shape and any resolution notes.

    Example Output:
        ╭─ Attention Source ───────────────────────────────────────╮
        │ ~ KV-Derived  (12 layers × 12 heads × 9 tokens)          │
        │ Approximated from K@K^T - shows key similarity patterns  │
        ╰──────────────────────────────────────────────────────────╯
    """
    if console is None:
        console = Console()

    info = SOURCE_INFO[resolved.source]
    style = info["style"]
    body = f"[bold {style}]{info['label']}[/bold {style}]"
    if not resolved.is_empty:
        body += f"  [dim]({resolved.num_layers} layers × {resolved.num_heads} heads × {resolved.seq_len} tokens)[/dim]"
    body += f"\n{info['description']}"
    for note in resolved.notes:
        body += f"\n[dim]• {note}[/dim]"

    console.print(Panel.fit(body, title="[bold]Attention Source[/bold]", border_style=style))


def visualize_circuits(
    findings: List[CircuitFinding],
    console: Optional[Console] = None,
    top_k: int = 10,
    show_evidence: bool = True
):
    """
    Ranked table of detected circuit heads.

    Example Output:
        Rank │ Head  │ Circuit              │ Score │ Confidence
        ─────┼───────┼──────────────────────┼───────┼───────────
          1  │ L4H11 │ Previous Token Head  │ 0.912 │ high
          2  │ L5H1  │ Induction Head       │ 0.443 │ medium
    """
    if console is None:
        console = Console()

    if not findings:
        console.print("[dim]No circuits detected above threshold.[/dim]")
        return

    table = Table(
        title=f"Detected Circuits (top {min(top_k, len(findings))} of {len(findings)})",
        show_header=True,
        header_style="bold magenta",
    )
    table.add_column("Rank", justify="right", style="cyan", width=6)
    table.add_column("Head", style="yellow", width=8)
    table.add_column("Circuit", width=22)
    table.add_column("Score", justify="right", width=8)
    table.add_column("Confidence", width=11)
    if show_evidence:
        table.add_column("Evidence")

    for rank, finding in enumerate(findings[:top_k], 1):
        color = CONFIDENCE_STYLES[finding.confidence]
        row = [
            str(rank),
            finding.head_label,
            finding.type.display_name,
            f"[{color}]{finding.score:.3f}[/{color}]",
            f"[{color}]{finding.confidence.value}[/{color}]",
        ]
        if show_evidence:
            row.append(escape(finding.evidence))
        table.add_row(*row)

    console.print(table)


def visualize_predictions(
    predictions: List[Prediction],
    console: Optional[Console] = None,
    title: str = "Next Token Predictions"
):
    if console is None:
        console = Console()

    if not predictions:
        console.print("[dim]No predictions available.[/dim]")
        return

    table = Table(title=title, show_header=True, header_style="bold magenta")
    table.add_column("#", justify="right", style="cyan", width=4)
    table.add_column("Token", width=20)
    table.add_column("Probability", justify="right", width=12)

    for rank, pred in enumerate(predictions, 1):
        color = _prob_color(pred.probability)
        table.add_row(str(rank), f"[{color}]{escape(repr(pred.token))}[/{color}]", f"{pred.probability:.1%}")

    console.print(table)


def visualize_logit_lens(
    layers: List[LayerPredictions],
    input_text: str,
    console: Optional[Console] = None,
    top_k: int = 5
):
    """
    How the top predictions evolve layer by layer.

    Early layers tend to predict generic tokens; the answer usually shows up
    somewhere in the middle and sharpens toward the end. The first layer that
    already commits to the final answer is starred.
    """
    if console is None:
        console = Console()

    console.print()
    console.print(Panel.fit(
        f"[bold cyan]Input:[/bold cyan] {escape(input_text)}",
        title="[bold]Logit Lens: How Predictions Evolve Through Layers[/bold]",
        border_style="cyan"
    ))

    table = Table(title="Top Predictions by Layer", show_header=True, header_style="bold magenta")
    table.add_column("Layer", style="cyan", width=14)
    for i in range(top_k):
        table.add_column(f"#{i+1}", justify="left")

    converged = find_convergence_layer(layers)

    for layer in layers:
        row = [f"{layer.layer_name} ★" if layer is converged else layer.layer_name]
        for pred in layer.predictions[:top_k]:
            color = _prob_color(pred.probability)
            row.append(f"[{color}]{escape(pred.token)}[/{color}] ({pred.probability:.1%})")
        table.add_row(*row)

    console.print(table)

    if converged is not None:
        console.print(f"[dim]Prediction settles at {converged.layer_name} ★[/dim]")


def visualize_attention_pattern(
    tokens: List[str],
    attention_weights: torch.Tensor,
    layer_idx: int,
    head_idx: int,
    console: Optional[Console] = None,
    threshold: float = 0.1
):
    """
    One head's attention matrix as a grid.

    Args:
        tokens: Token strings
        attention_weights: (seq_len, seq_len), row i = what position i attends to
        layer_idx: Layer of the head
        head_idx: Head index
        console: Rich console object
        threshold: Values below this are shown as a dot
    """
    if console is None:
        console = Console()

    console.print(f"[bold]Attention Pattern: Layer {layer_idx}, Head {head_idx}[/bold]")

    attn = attention_weights.detach().cpu().numpy()
    seq_len = min(len(tokens), attn.shape[0])

    table = Table(show_header=True, header_style="bold magenta", box=None)
    table.add_column("From →", style="cyan", width=12)
    for token in tokens[:seq_len]:
        table.add_column(escape(token[:8]), justify="center", width=8)

    for i in range(seq_len):
        row = [escape(tokens[i][:12])]
        for j in range(seq_len):
            value = attn[i, j]
            if value < threshold:
                row.append("[dim]·[/dim]")
            elif value > 0.5:
                row.append(f"[bright_red]█[/bright_red] {value:.2f}")
            elif value > 0.3:
                row.append(f"[red]▓[/red] {value:.2f}")
            else:
                row.append(f"[yellow]▒[/yellow] {value:.2f}")
        table.add_row(*row)

    console.print(table)
    console.print("[dim]Legend: █ > 50% | ▓ > 30% | ▒ > 10% | · < threshold[/dim]")


def _attention_impact_line(report: AblationReport) -> str:
    if report.attention_impact is None:
        return ""
    return f"[cyan]Attention pattern change:[/cyan] {report.attention_impact:.1%}\n"


def visualize_ablation(report: Optional[AblationReport], console: Optional[Console] = None):
    """
    Before/after comparison for an ablation report.

    Example Output:
        ╭─ Ablation Impact: L4H11, L5H1 ────────────────────╮
        │ Original:  ' mat' (42.1%)                          │
        │ Ablated:   ' mat' (31.7%)   shift -10.4%           │
        │ Entropy change +0.412 bits   KL 0.0831 nats        │
        │ Impact: MEDIUM                                     │
        ╰────────────────────────────────────────────────────╯
    """
    if console is None:
        console = Console()

    if report is None:
        console.print("[yellow]Nothing to ablate: the mask is empty or the model returned no logits.[/yellow]")
        return

    impact = report.impact
    level = impact.level
    heads = ", ".join(f"L{l}H{h}" for l, h in report.ablated_heads)
    level_style = IMPACT_STYLES[level]

    body = (
        f"[cyan]Original:[/cyan] {escape(repr(impact.original_top_token))} ({impact.original_top_prob:.1%})\n"
        f"[cyan]Ablated:[/cyan]  {escape(repr(impact.ablated_top_token))} ({impact.ablated_top_prob:.1%})"
        f"   shift {impact.probability_shift:+.1%}\n"
        f"[cyan]Entropy change:[/cyan] {impact.entropy_change:+.3f} bits   "
        f"[cyan]KL:[/cyan] {impact.kl_divergence:.4f} nats   "
        f"[cyan]Strength:[/cyan] {report.strength:.3f}\n"
        f"{_attention_impact_line(report)}"
        f"[{level_style}]Impact: {level.value.upper()}[/{level_style}] - {level.description}"
    )
    console.print(Panel.fit(body, title=f"[bold]Ablation Impact: {heads}[/bold]", border_style="cyan"))

    table = Table(title="Rank Changes (original top 5)", show_header=True, header_style="bold magenta")
    table.add_column("Token", width=16)
    table.add_column("Rank", justify="center", width=10)
    table.add_column("Prob Δ", justify="right", width=10)
    for change in impact.rank_changes:
        if change.ablated_rank > change.original_rank:
            color = "red"
        elif change.ablated_rank < change.original_rank:
            color = "green"
        else:
            color = "white"
        table.add_row(
            escape(repr(change.token)),
            f"[{color}]{change.original_rank} → {change.ablated_rank}[/{color}]",
            f"{change.prob_change:+.2%}",
        )
    console.print(table)

    if report.contributions:
        contrib = Table(title="Head Contributions", show_header=True, header_style="bold magenta")
        contrib.add_column("Head", style="yellow", width=8)
        contrib.add_column("Importance", justify="right", width=12)
        contrib.add_column("Share", justify="right", width=8)
        for c in report.contributions:
            contrib.add_row(c.head_label, f"{c.importance:.4f}", f"{c.percentage:.1f}%")
        console.print(contrib)

    if report.disclaimer:
        console.print(f"[dim]{report.disclaimer}[/dim]")


def visualize_vectors(vectors: List[SteeringVector], console: Optional[Console] = None):
    if console is None:
        console = Console()

    if not vectors:
        console.print("[dim]No saved steering vectors.[/dim]")
        return

    table = Table(title="Saved Steering Vectors", show_header=True, header_style="bold magenta")
    table.add_column("Name", style="cyan")
    table.add_column("Dim", justify="right", width=6)
    table.add_column("Norm", justify="right", width=8)
    table.add_column("Description")
    table.add_column("ID", style="dim")

    for v in vectors:
        table.add_row(escape(v.name), str(v.dimension), f"{v.norm:.2f}", escape(v.description or ""), v.id)

    console.print(table)


def visualize_generation(
    baseline: GenerationResult,
    steered: Optional[GenerationResult] = None,
    steering_label: str = "",
    console: Optional[Console] = None
):
    """Show a generation, and next to it the steered one if given."""
    if console is None:
        console = Console()

    console.print(Panel(
        f"[bold]{escape(baseline.prompt)}[/bold]{escape(baseline.generated_text)}",
        title="[bold]Unsteered[/bold]" if steered is not None else "[bold]Generated[/bold]",
        border_style="white",
    ))
    if steered is not None:
        console.print(Panel(
            f"[bold]{escape(steered.prompt)}[/bold][green]{escape(steered.generated_text)}[/green]",
            title=f"[bold green]Steered{': ' + escape(steering_label) if steering_label else ''}[/bold green]",
            border_style="green",
        ))
