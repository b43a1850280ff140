#!/usr/bin/env python3
"""
Interactive CLI for CircuitScope.

A menu-driven session around one loaded model: analyze prompts, ablate heads
of the last analysis, build steering vectors and compare steered generations
without memorizing command-line flags.

The loaded model and the last analysis live in a SessionState, so ablation
requests reuse the cached attention and never call the model again.
"""

import sys
from pathlib import Path
from typing import Optional, List

import questionary
from questionary import Style
from rich.console import Console
from rich.panel import Panel
from rich import box

# Add parent directory to path for imports
sys.path.append(str(Path(__file__).parent.parent))

from commands.interpret import load_session, render_analysis
from src.circuitscope.errors import CircuitScopeError
from src.circuitscope.interpretability.ablation import AblationMask
from src.circuitscope.interpretability.circuits import CircuitType
from src.circuitscope.interpretability.pipeline import AnalysisResult, CircuitAnalyzer
from src.circuitscope.interpretability.steering import (
    SteeringConfig,
    build_steering_vector,
    parse_examples,
)
from src.circuitscope.interpretability.visualizations import (
    visualize_ablation,
    visualize_generation,
    visualize_vectors,
)
from src.circuitscope.outputs import GenerationConfig
from src.circuitscope.vector_library import VectorLibrary

# Initialize Rich console for pretty output
console = Console()

# Custom style for questionary prompts
custom_style = Style([
    ('qmark', 'fg:#673ab7 bold'),       # Question mark
    ('question', 'bold'),                # Question text
    ('answer', 'fg:#2196f3 bold'),      # Selected answer
    ('pointer', 'fg:#673ab7 bold'),     # Selection pointer
    ('highlighted', 'fg:#673ab7 bold'), # Highlighted choice
    ('selected', 'fg:#2196f3'),         # Selected choice
    ('separator', 'fg:#666666'),        # Separator
    ('instruction', 'fg:#666666'),      # Instructions
])

DEFAULT_MODEL = "gpt2"
DEFAULT_PROMPT = "The cat sat on the mat. The cat sat on the"


class SessionState:
    """The loaded model, its analyzer, the last analysis and the vector library."""

    def __init__(self, library: Optional[VectorLibrary] = None):
        self.session = None
        self.analyzer: Optional[CircuitAnalyzer] = None
        self.last_result: Optional[AnalysisResult] = None
        self.library = library or VectorLibrary()

    @property
    def has_model(self) -> bool:
        return self.session is not None

    @property
    def model_name(self) -> str:
        return self.session.model_name if self.session is not None else "none"

    def attach(self, session):
        self.close()
        self.session = session
        self.analyzer = CircuitAnalyzer(session)
        self.last_result = None

    def close(self):
        if self.session is not None:
            self.session.close()
        self.session = None
        self.analyzer = None
        self.last_result = None


def show_welcome():
    """Display welcome message."""
    console.clear()

    welcome_text = """[bold cyan]CircuitScope[/bold cyan]

Look inside a pretrained language model:

  [bold green]🔍 Analyze[/bold green]   → find previous-token, induction and duplicate-token heads
  [bold yellow]✂️  Ablate[/bold yellow]    → estimate what switching heads off does to the prediction
  [bold magenta]🧭 Steer[/bold magenta]     → build concept vectors and nudge generation with them

Every attention view is labelled [green]real[/green], [yellow]kv_derived[/yellow] or [red]synthetic[/red].
Ablation numbers are estimates from attention patterns, not re-runs.

[dim]Use arrow keys to navigate, Enter to select, Ctrl+C to exit anytime.[/dim]"""

    console.print(Panel(welcome_text, border_style="cyan", box=box.ROUNDED))
    console.print()


def main_menu(state: SessionState) -> str:
    """Main menu; model-dependent entries appear once a model is loaded."""
    console.print(f"[dim]Model: {state.model_name}[/dim]")

    choices = ["─── MODEL ───", "📦 Load a model"]

    if state.has_model:
        choices.append("─── ANALYSIS ───")
        choices.append("🔍 Analyze a prompt")
        if state.last_result is not None:
            choices.append("✂️  Ablate heads (last analysis)")
        else:
            choices.append("[Locked] ✂️  Ablate heads (analyze a prompt first)")

        choices.append("─── STEERING ───")
        choices.append("🧭 Build a steering vector")
        choices.append("✨ Generate text (with or without steering)")

    choices.append("─── UTILITIES ───")
    choices.append("📚 Manage steering vectors")
    choices.append("❌ Exit")

    return questionary.select(
        "What would you like to do?",
        choices=choices,
        style=custom_style,
    ).ask()


# ============================================================================
# Menus (collect input, return a config dict or None)
# ============================================================================

def load_model_menu() -> Optional[dict]:
    model = questionary.text(
        "Hugging Face model id or local path:",
        default=DEFAULT_MODEL,
        style=custom_style,
    ).ask()
    if not model:
        return None

    device = questionary.select(
        "Device:",
        choices=["auto", "cpu", "cuda", "mps"],
        style=custom_style,
    ).ask()

    return {'model': model.strip(), 'device': None if device in (None, "auto") else device}


def analyze_menu() -> Optional[dict]:
    text = questionary.text(
        "Enter text to analyze:",
        default=DEFAULT_PROMPT,
        style=custom_style,
    ).ask()
    if not text or not text.strip():
        return None

    logit_lens = questionary.confirm(
        "Also show the logit lens (predictions at every layer)?",
        default=False,
        style=custom_style,
    ).ask()

    return {'text': text, 'logit_lens': bool(logit_lens)}


def ablate_menu(result: AnalysisResult) -> Optional[dict]:
    """Pick heads by hand or by circuit type."""
    detected = sorted({f.type for f in result.circuits}, key=lambda t: t.value)
    choices = ["Enter heads by hand (e.g. 5.1 6.9)"]
    choices += [f"All {t.display_name}s" for t in detected]

    mode = questionary.select(
        "What should be ablated?",
        choices=choices,
        style=custom_style,
    ).ask()
    if mode is None:
        return None

    if mode.startswith("Enter"):
        heads = questionary.text(
            "Heads (LAYER.HEAD, space-separated):",
            style=custom_style,
        ).ask()
        if not heads or not heads.strip():
            return None
        return {'heads': heads.split()}

    for circuit_type in detected:
        if mode == f"All {circuit_type.display_name}s":
            return {'circuit': circuit_type.value}
    return None


def build_vector_menu() -> Optional[dict]:
    positives = questionary.text(
        "Positive examples (one per line, Esc+Enter to finish):",
        multiline=True,
        style=custom_style,
    ).ask()
    negatives = questionary.text(
        "Negative examples (one per line, Esc+Enter to finish):",
        multiline=True,
        style=custom_style,
    ).ask()

    positives = parse_examples(positives or "")
    negatives = parse_examples(negatives or "")
    if not positives or not negatives:
        console.print("[yellow]Need at least one positive and one negative example.[/yellow]")
        return None

    name = questionary.text(
        "Vector name:",
        default=f"{positives[0]} vs {negatives[0]}",
        style=custom_style,
    ).ask()
    description = questionary.text(
        "Description (optional):",
        style=custom_style,
    ).ask()

    return {
        'positives': positives,
        'negatives': negatives,
        'name': name or None,
        'description': description or None,
    }


def generate_menu(vector_names: List[str]) -> Optional[dict]:
    prompt = questionary.text(
        "Prompt:",
        default="Today I feel",
        style=custom_style,
    ).ask()
    if not prompt or not prompt.strip():
        return None

    vector = questionary.select(
        "Steering vector:",
        choices=["None (unsteered)"] + vector_names,
        style=custom_style,
    ).ask()
    if vector is None or vector.startswith("None"):
        vector = None

    strength = 0.0
    if vector is not None:
        strength = float(questionary.text(
            "Strength (0 disables steering):",
            default="4.0",
            style=custom_style,
        ).ask() or 0.0)

    max_new_tokens = int(questionary.text(
        "Tokens to generate:",
        default="20",
        style=custom_style,
    ).ask() or 20)

    return {
        'prompt': prompt,
        'vector': vector,
        'strength': strength,
        'max_new_tokens': max_new_tokens,
    }


def manage_vectors_menu(state: SessionState) -> Optional[dict]:
    vectors = state.library.list()
    visualize_vectors(vectors, console)
    if not vectors:
        return None

    choice = questionary.select(
        "Delete a vector?",
        choices=["Keep all"] + [f"{v.name} ({v.id[:8]})" for v in vectors],
        style=custom_style,
    ).ask()
    if choice is None or choice == "Keep all":
        return None

    index = [f"{v.name} ({v.id[:8]})" for v in vectors].index(choice)
    confirmed = questionary.confirm(
        f"Delete '{vectors[index].name}'?",
        default=False,
        style=custom_style,
    ).ask()
    if not confirmed:
        return None
    return {'delete': vectors[index].id}


# ============================================================================
# Runners (execute a config against the session)
# ============================================================================

def run_load_model(state: SessionState, config: dict):
    session = load_session(config['model'], config.get('device'), console)
    state.attach(session)


def run_analyze(state: SessionState, config: dict):
    with console.status("[bold blue]Running model..."):
        result = state.analyzer.analyze(config['text'], with_logit_lens=config.get('logit_lens', False))
    state.last_result = result
    console.print()
    render_analysis(result, console)


def run_ablate(state: SessionState, config: dict):
    result = state.last_result
    if 'heads' in config:
        report = state.analyzer.ablate(result, heads=AblationMask.parse(config['heads']))
    else:
        report = state.analyzer.ablate(result, circuit_type=CircuitType(config['circuit']))
    console.print()
    visualize_ablation(report, console)


def run_build_vector(state: SessionState, config: dict):
    with console.status("[bold blue]Computing hidden states...") as status:
        vector = build_steering_vector(
            state.session,
            config['positives'],
            config['negatives'],
            name=config.get('name'),
            description=config.get('description'),
            progress=lambda example: status.update(f"[bold blue]Processing:[/bold blue] {example[:40]}"),
        )
    state.library.save(vector)
    console.print(
        f"[green]✓ Saved steering vector[/green] [bold]{vector.name}[/bold] "
        f"[dim]({vector.dimension} dims)[/dim]"
    )


def run_generate(state: SessionState, config: dict, seed: Optional[int] = 0):
    generation = GenerationConfig(max_new_tokens=config['max_new_tokens'], seed=seed)

    steering = SteeringConfig.disabled()
    if config.get('vector'):
        steering = SteeringConfig.from_vector(state.library.get_by_name(config['vector']), config['strength'])

    with console.status("[bold blue]Generating..."):
        baseline = state.session.generate(config['prompt'], generation)
        steered = state.session.generate(config['prompt'], generation, steering) if steering.enabled else None

    label = f"{steering.vector_name} × {steering.strength:g}" if steering.enabled else ""
    visualize_generation(baseline, steered, label, console)


def run_manage_vectors(state: SessionState, config: dict):
    state.library.delete(config['delete'])
    console.print("[green]✓ Deleted[/green]")


def handle_choice(state: SessionState, choice: str):
    """Dispatch one main-menu choice."""
    if choice.startswith("📦"):
        config = load_model_menu()
        if config:
            run_load_model(state, config)

    elif choice.startswith("🔍"):
        config = analyze_menu()
        if config:
            run_analyze(state, config)

    elif choice.startswith("✂️"):
        config = ablate_menu(state.last_result)
        if config:
            run_ablate(state, config)

    elif choice.startswith("🧭"):
        config = build_vector_menu()
        if config:
            run_build_vector(state, config)

    elif choice.startswith("✨"):
        config = generate_menu([v.name for v in state.library.list()])
        if config:
            run_generate(state, config)

    elif choice.startswith("📚"):
        config = manage_vectors_menu(state)
        if config:
            run_manage_vectors(state, config)


def interactive_main(state: Optional[SessionState] = None):
    """Main interactive loop."""
    show_welcome()
    state = state or SessionState()

    try:
        while True:
            choice = main_menu(state)

            if not choice or choice.startswith("❌"):
                console.print("\n[bold cyan]Goodbye! 👋[/bold cyan]")
                break

            # Separators and locked entries do nothing
            if choice.startswith("───") or choice.startswith("[Locked]"):
                continue

            try:
                handle_choice(state, choice)
            except CircuitScopeError as e:
                console.print(f"[red]Error:[/red] {e}")

            console.print("\n" + "=" * 80 + "\n")
    finally:
        state.close()


if __name__ == "__main__":
    try:
        interactive_main()
    except KeyboardInterrupt:
        console.print("\n\n[yellow]Interrupted by user[/yellow]")
        sys.exit(0)
