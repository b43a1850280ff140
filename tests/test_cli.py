"""
Tests for the command-line interface.

Model loading is patched to return the tiny GPT-2 session, so every command
runs end to end without downloads.
"""

import json
from unittest.mock import patch

import numpy as np
import pytest

import main
from src.circuitscope.interpretability.steering import SteeringVector
from src.circuitscope.vector_library import VectorLibrary


PROMPT = "the cat sat on the mat the cat"


@pytest.fixture
def patched_session(tiny_session):
    """Every command gets the tiny session instead of a downloaded model."""
    with patch('commands.interpret.load_session', return_value=tiny_session) as interpret_load, \
         patch('commands.steer.load_session', return_value=tiny_session):
        yield interpret_load


@pytest.fixture(autouse=True)
def no_logging_setup():
    """Leave pytest's log capture in place."""
    with patch('main.setup_logging'):
        yield


class TestParser:
    """Argument parsing."""

    def test_analyze_args(self):
        """Analyze flags should parse with a default top-k of 5."""
        args = main.create_parser().parse_args(
            ['analyze', 'gpt2', '--text', 'hello', '--logit-lens', '--show-head', '5.1']
        )
        assert args.command == 'analyze'
        assert args.model == 'gpt2'
        assert args.logit_lens
        assert args.show_head == '5.1'
        assert args.top_k == 5

    def test_ablate_heads_and_circuit_exclusive(self):
        """--heads and --circuit cannot be combined."""
        with pytest.raises(SystemExit):
            main.create_parser().parse_args(
                ['ablate', 'gpt2', '--text', 'x', '--heads', '1.1', '--circuit', 'induction']
            )

    def test_ablate_circuit_choices(self):
        """--circuit should accept circuit type names."""
        args = main.create_parser().parse_args(['ablate', 'gpt2', '--text', 'x', '--circuit', 'duplicate_token'])
        assert args.circuit == 'duplicate_token'

    def test_vectors_requires_subcommand(self):
        """vectors without a subcommand should exit."""
        with pytest.raises(SystemExit):
            main.create_parser().parse_args(['vectors'])

    def test_generate_defaults(self):
        """Generate should default to strength 1, no seed and no vector."""
        args = main.create_parser().parse_args(['generate', 'gpt2', '--prompt', 'Hi'])
        assert args.strength == 1.0
        assert args.seed is None
        assert args.vector is None

    def test_no_command_starts_interactive(self):
        """No arguments should start the interactive menu."""
        with patch('main.interactive_main') as interactive:
            main.main([])
        interactive.assert_called_once()


class TestAnalyzeCommand:
    """python main.py analyze"""

    def test_writes_json(self, patched_session, tmp_path):
        """--output should write the analysis as JSON without raw attention."""
        output = tmp_path / "out" / "analysis.json"
        main.main(['analyze', 'tiny', '--text', PROMPT, '--logit-lens', '--show-head', '1.0',
                   '--output', str(output)])

        data = json.loads(output.read_text())
        assert data["attention_source"] in ("real", "kv_derived")
        assert len(data["tokens"]) == 8
        assert "attention" not in data["attention"]
        assert data["logit_lens"][-1]["layer_name"] == "Final Output"
        assert patched_session.call_args[0][:2] == ('tiny', None)

    def test_bad_show_head_exits(self, patched_session):
        """A head outside the model should exit with status 1."""
        with pytest.raises(SystemExit) as exc:
            main.main(['analyze', 'tiny', '--text', PROMPT, '--show-head', '7.0'])
        assert exc.value.code == 1


class TestAblateCommand:
    """python main.py ablate"""

    def test_explicit_heads(self, patched_session, tmp_path):
        """Explicit heads should be ablated and written to JSON."""
        output = tmp_path / "ablation.json"
        main.main(['ablate', 'tiny', '--text', PROMPT, '--heads', '1.0', 'L1H3', '--output', str(output)])

        data = json.loads(output.read_text())
        assert data["method"] == "heuristic"
        assert data["ablated_heads"] == [[1, 0], [1, 3]]
        assert data["impact"]["kl_divergence"] >= 0

    def test_circuit_type(self, patched_session):
        """Ablating by circuit type should run without error."""
        main.main(['ablate', 'tiny', '--text', PROMPT, '--circuit', 'induction'])

    def test_requires_target(self, patched_session):
        """Ablate without heads or circuit should exit before loading a model."""
        with pytest.raises(SystemExit) as exc:
            main.main(['ablate', 'tiny', '--text', PROMPT])
        assert exc.value.code == 1
        patched_session.assert_not_called()

    def test_out_of_range_head(self, patched_session):
        """An out-of-range head should exit with status 1."""
        with pytest.raises(SystemExit) as exc:
            main.main(['ablate', 'tiny', '--text', PROMPT, '--heads', '9.9'])
        assert exc.value.code == 1


class TestVectorCommands:
    """python main.py vectors ..."""

    def test_build_saves_vector(self, patched_session, tmp_path):
        """Building should read examples from files and arguments and save the vector."""
        library_path = tmp_path / "vectors.json"
        positives = tmp_path / "pos.txt"
        positives.write_text("i love it\nwhat a great day\n")

        main.main(['vectors', 'build', 'tiny', '--name', 'mood',
                   '--positive-file', str(positives),
                   '--negative', 'i hate it', 'what a bad day',
                   '--library', str(library_path)])

        vectors = VectorLibrary(library_path).list()
        assert [v.name for v in vectors] == ['mood']
        assert vectors[0].dimension == 32

    def test_build_without_negatives_exits(self, patched_session, tmp_path):
        """Building without negatives should exit before loading a model."""
        with pytest.raises(SystemExit):
            main.main(['vectors', 'build', 'tiny', '--positive', 'yes',
                       '--library', str(tmp_path / "v.json")])
        patched_session.assert_not_called()

    def test_list_and_delete(self, tmp_path):
        """Delete by name should remove only that vector."""
        library = VectorLibrary(tmp_path / "vectors.json")
        library.save(SteeringVector(name="keep", vector=[1.0]))
        library.save(SteeringVector(name="drop", vector=[2.0]))

        main.main(['vectors', 'list', '--library', str(library.path)])
        main.main(['vectors', 'delete', 'drop', '--library', str(library.path)])

        assert [v.name for v in library.list()] == ['keep']

    def test_delete_missing_exits(self, tmp_path):
        """Deleting an unknown vector should exit with status 1."""
        with pytest.raises(SystemExit) as exc:
            main.main(['vectors', 'delete', 'nothing', '--library', str(tmp_path / "v.json")])
        assert exc.value.code == 1


class TestGenerateCommand:
    """python main.py generate"""

    def test_steered_and_baseline(self, patched_session, tmp_path):
        """Generate with a vector should show both baseline and steered output."""
        library = VectorLibrary(tmp_path / "vectors.json")
        library.save(SteeringVector(name="mood", vector=np.ones(32, dtype=np.float32)))

        with patch('commands.steer.visualize_generation') as show:
            main.main(['generate', 'tiny', '--prompt', PROMPT, '--vector', 'mood',
                       '--strength', '2', '--seed', '0', '--max-new-tokens', '3',
                       '--library', str(library.path)])

        baseline, steered, label, _ = show.call_args[0]
        assert not baseline.steered
        assert steered.steered
        assert len(steered.new_token_ids) == 3
        assert label == "mood × 2"

    def test_without_vector_only_baseline(self, patched_session, tmp_path):
        """Generate without a vector should show only the baseline."""
        with patch('commands.steer.visualize_generation') as show:
            main.main(['generate', 'tiny', '--prompt', PROMPT, '--max-new-tokens', '2',
                       '--library', str(tmp_path / "v.json")])
        assert show.call_args[0][1] is None

    def test_dimension_mismatch_exits(self, patched_session, tmp_path):
        """A vector of the wrong size should exit with status 1."""
        library = VectorLibrary(tmp_path / "vectors.json")
        library.save(SteeringVector(name="wide", vector=np.ones(768, dtype=np.float32)))

        with pytest.raises(SystemExit) as exc:
            main.main(['generate', 'tiny', '--prompt', PROMPT, '--vector', 'wide',
                       '--library', str(library.path)])
        assert exc.value.code == 1

    def test_unknown_vector_exits(self, patched_session, tmp_path):
        """An unknown vector name should exit."""
        with pytest.raises(SystemExit):
            main.main(['generate', 'tiny', '--prompt', PROMPT, '--vector', 'missing',
                       '--library', str(tmp_path / "v.json")])
