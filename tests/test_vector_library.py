"""
Tests for the JSON vector library.
"""

import json

import numpy as np
import pytest

from src.circuitscope.errors import VectorNotFoundError, VectorSerializationError
from src.circuitscope.interpretability.steering import SteeringVector
from src.circuitscope.vector_library import VectorLibrary


@pytest.fixture
def library(tmp_path):
    return VectorLibrary(tmp_path / "vectors" / "library.json")


class TestVectorLibrary:
    """Save, list, look up and delete vectors."""

    def test_missing_file_is_empty(self, library):
        """A library file that does not exist yet lists nothing."""
        assert library.list() == []

    def test_save_creates_file(self, library):
        """Saving should create the file and its directory."""
        library.save(SteeringVector(name="a", vector=[1.0, 2.0]))

        data = json.loads(library.path.read_text())
        assert [v["name"] for v in data["vectors"]] == ["a"]

    def test_list_oldest_first(self, library):
        """Vectors should be listed oldest first."""
        library.save(SteeringVector(name="new", vector=[1.0], created_at=2000))
        library.save(SteeringVector(name="old", vector=[1.0], created_at=1000))
        assert [v.name for v in library.list()] == ["old", "new"]

    def test_save_replaces_same_name(self, library):
        """Saving an existing name should replace that entry."""
        first = SteeringVector(name="mood", vector=[1.0, 1.0])
        second = SteeringVector(name="mood", vector=[2.0, 2.0])
        library.save(first)
        library.save(second)

        vectors = library.list()
        assert len(vectors) == 1
        assert vectors[0].id == second.id
        np.testing.assert_allclose(vectors[0].vector, [2.0, 2.0])

    def test_round_trip_bits(self, library):
        """Vectors read back should be bit-identical."""
        original = SteeringVector(name="v", vector=np.array([0.1, 1e-7, -3.3], dtype=np.float32))
        library.save(original)
        assert library.get(original.id).vector.tobytes() == original.vector.tobytes()

    def test_delete(self, library):
        """Deleting should remove only the named id."""
        keep = library.save(SteeringVector(name="keep", vector=[1.0]))
        drop = library.save(SteeringVector(name="drop", vector=[1.0]))
        library.delete(drop.id)
        assert [v.id for v in library.list()] == [keep.id]

    def test_delete_unknown_raises(self, library):
        """Deleting an unknown id should raise VectorNotFoundError."""
        library.save(SteeringVector(name="a", vector=[1.0]))
        with pytest.raises(VectorNotFoundError, match="No steering vector with id nope"):
            library.delete("nope")

    def test_get_by_name(self, library):
        """Lookup by name should find saved vectors and raise for others."""
        saved = library.save(SteeringVector(name="formal", vector=[1.0]))
        assert library.get_by_name("formal").id == saved.id
        with pytest.raises(VectorNotFoundError):
            library.get_by_name("casual")

    def test_find_by_name_or_id(self, library):
        """find() should accept a name or an id and return None otherwise."""
        saved = library.save(SteeringVector(name="formal", vector=[1.0]))
        assert library.find("formal").id == saved.id
        assert library.find(saved.id).name == "formal"
        assert library.find("missing") is None

    def test_corrupt_file_raises(self, library):
        """A corrupt library file should raise VectorSerializationError."""
        library.path.parent.mkdir(parents=True)
        library.path.write_text("{not json")
        with pytest.raises(VectorSerializationError, match="not valid JSON"):
            library.list()
