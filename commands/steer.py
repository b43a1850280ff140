"""
Steering vector commands.

vectors build:  run contrastive examples through a model and save the
                resulting steering vector to the library
vectors list:   show saved vectors
vectors delete: remove a vector by id (or name)
generate:       sample text, optionally with a saved vector added to the
                input embeddings, next to an unsteered baseline

Usage Examples:
---------------
    # Build a vector from examples given inline (one per line) or from files
    python main.py vectors build gpt2 --name happy-sad \
        --positive "I am so happy" "What a wonderful day" \
        --negative "I am so sad" "What a terrible day"

    python main.py vectors build gpt2 --positive-file pos.txt --negative-file neg.txt

    python main.py vectors list
    python main.py vectors delete happy-sad

    # Compare steered and unsteered generations with the same seed
    python main.py generate gpt2 --prompt "Today I feel" \
        --vector happy-sad --strength 4 --seed 0
"""

import logging
import random
from pathlib import Path

from rich.console import Console

from commands.interpret import load_session
from src.circuitscope.errors import InvalidInputError, VectorNotFoundError
from src.circuitscope.interpretability.steering import (
    SteeringConfig,
    build_steering_vector,
    parse_examples,
)
from src.circuitscope.interpretability.visualizations import (
    visualize_generation,
    visualize_vectors,
)
from src.circuitscope.outputs import GenerationConfig
from src.circuitscope.vector_library import DEFAULT_LIBRARY_PATH, VectorLibrary


logger = logging.getLogger(__name__)


def _collect_examples(inline, path):
    examples = []
    for item in inline or []:
        examples.extend(parse_examples(item))
    if path:
        examples.extend(parse_examples(Path(path).read_text()))
    return examples


# ============================================================================
# VECTORS COMMANDS
# ============================================================================

def cmd_vectors_build(args):
    """Build a steering vector from contrastive examples and save it."""
    console = Console()

    positives = _collect_examples(args.positive, args.positive_file)
    negatives = _collect_examples(args.negative, args.negative_file)
    if not positives or not negatives:
        raise InvalidInputError("Need at least one positive and one negative example")

    session = load_session(args.model, args.device, console)
    try:
        with console.status("[bold blue]Computing hidden states...") as status:
            vector = build_steering_vector(
                session,
                positives,
                negatives,
                name=args.name,
                description=args.description,
                layer=args.layer,
                progress=lambda example: status.update(f"[bold blue]Processing:[/bold blue] {example[:40]}"),
            )
    finally:
        session.close()

    VectorLibrary(args.library).save(vector)
    console.print(
        f"[green]✓ Saved steering vector[/green] [bold]{vector.name}[/bold] "
        f"[dim]({vector.dimension} dims, norm {vector.norm:.2f})[/dim]"
    )


def cmd_vectors_list(args):
    """List saved steering vectors."""
    visualize_vectors(VectorLibrary(args.library).list(), Console())


def cmd_vectors_delete(args):
    """Delete a steering vector by id or name."""
    library = VectorLibrary(args.library)
    vector = library.find(args.vector)
    if vector is None:
        raise VectorNotFoundError(f"No steering vector with name or id '{args.vector}'")
    library.delete(vector.id)
    Console().print(f"[green]✓ Deleted[/green] {vector.name}")


# ============================================================================
# GENERATE COMMAND
# ============================================================================

def cmd_generate(args):
    """Generate text, optionally steered, next to an unsteered baseline."""
    console = Console()

    steering = SteeringConfig.disabled()
    if args.vector:
        vector = VectorLibrary(args.library).find(args.vector)
        if vector is None:
            raise VectorNotFoundError(f"No steering vector with name or id '{args.vector}'")
        steering = SteeringConfig.from_vector(vector, args.strength)

    config = GenerationConfig(
        max_new_tokens=args.max_new_tokens,
        temperature=args.temperature,
        top_k=args.top_k,
        # Both runs share one seed so they differ only by the steering
        seed=args.seed if args.seed is not None else random.randint(0, 2**31 - 1),
    )

    session = load_session(args.model, args.device, console)
    try:
        if steering.enabled and steering.vector.shape[0] != session.hidden_size:
            raise InvalidInputError(
                f"Vector '{steering.vector_name}' has {steering.vector.shape[0]} dims, "
                f"model hidden size is {session.hidden_size}"
            )

        baseline = session.generate(args.prompt, config)
        steered = session.generate(args.prompt, config, steering) if steering.enabled else None
    finally:
        session.close()

    label = f"{steering.vector_name} × {steering.strength:g}" if steering.enabled else ""
    visualize_generation(baseline, steered, label, console)


# ============================================================================
# ARGUMENT PARSING
# ============================================================================

def _add_library_arg(parser):
    parser.add_argument(
        '--library',
        type=str,
        default=str(DEFAULT_LIBRARY_PATH),
        help=f'Vector library file (default: {DEFAULT_LIBRARY_PATH})'
    )


def setup_vectors_parser(parser):
    """Subcommands of the vectors command."""
    subparsers = parser.add_subparsers(dest='subcommand', help='Vector library operation')
    subparsers.required = True

    # --------------------------------------------------------------------
    # BUILD
    # --------------------------------------------------------------------
    build_parser = subparsers.add_parser(
        'build',
        help='Build a steering vector from contrastive examples',
    )
    build_parser.add_argument('model', type=str, help='Hugging Face model id or local path')
    build_parser.add_argument('--name', type=str, default=None,
                              help='Vector name (default: "<first positive> vs <first negative>")')
    build_parser.add_argument('--description', type=str, default=None, help='Stored with the vector')
    build_parser.add_argument('--positive', type=str, nargs='+', help='Positive examples')
    build_parser.add_argument('--negative', type=str, nargs='+', help='Negative examples')
    build_parser.add_argument('--positive-file', type=str, default=None,
                              help='File with one positive example per line')
    build_parser.add_argument('--negative-file', type=str, default=None,
                              help='File with one negative example per line')
    build_parser.add_argument('--layer', type=int, default=-1,
                              help='Hidden-state layer to read (default: -1, the last)')
    build_parser.add_argument('--device', type=str, choices=['cpu', 'cuda', 'mps'], default=None,
                              help='Device to use (default: auto-detect)')
    _add_library_arg(build_parser)
    build_parser.set_defaults(func=cmd_vectors_build)

    # --------------------------------------------------------------------
    # LIST
    # --------------------------------------------------------------------
    list_parser = subparsers.add_parser('list', help='List saved steering vectors')
    _add_library_arg(list_parser)
    list_parser.set_defaults(func=cmd_vectors_list)

    # --------------------------------------------------------------------
    # DELETE
    # --------------------------------------------------------------------
    delete_parser = subparsers.add_parser('delete', help='Delete a steering vector')
    delete_parser.add_argument('vector', type=str, help='Vector id or name')
    _add_library_arg(delete_parser)
    delete_parser.set_defaults(func=cmd_vectors_delete)


def setup_generate_parser(parser):
    """Arguments for the generate command."""
    parser.add_argument('model', type=str, help='Hugging Face model id or local path')
    parser.add_argument('--prompt', type=str, required=True, help='Text to continue')
    parser.add_argument('--vector', type=str, default=None, help='Saved steering vector (name or id)')
    parser.add_argument('--strength', type=float, default=1.0,
                        help='Steering strength; 0 disables steering (default: 1.0)')
    parser.add_argument('--max-new-tokens', type=int, default=20,
                        help='Tokens to generate (default: 20)')
    parser.add_argument('--temperature', type=float, default=1.0,
                        help='Sampling temperature, 0 = greedy (default: 1.0)')
    parser.add_argument('--top-k', type=int, default=50,
                        help='Top-k sampling cutoff, 0 = full vocabulary (default: 50)')
    parser.add_argument('--seed', type=int, default=None,
                        help='Random seed; the same seed gives comparable runs')
    parser.add_argument('--device', type=str, choices=['cpu', 'cuda', 'mps'], default=None,
                        help='Device to use (default: auto-detect)')
    _add_library_arg(parser)
    parser.set_defaults(func=cmd_generate)
